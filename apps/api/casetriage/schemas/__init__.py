"""Pydantic schemas for API request/response models."""

from casetriage.schemas.audit import (
    AuditEntryRead,
    AuditListResponse,
    ChainVerificationRead,
    ChangeFeedResponse,
)
from casetriage.schemas.auth import OperatorSession, TokenPayload
from casetriage.schemas.case import (
    AssignRequest,
    BulkAssignRequest,
    BulkAssignResponse,
    CaseDetail,
    CaseIntake,
    CaseListResponse,
    CaseRead,
    CaseStatsRead,
    IntakeResponse,
    MessageAppendResponse,
    MessageCreate,
    MessageRead,
    MutationResponse,
    TransitionRequest,
)

__all__ = [
    "AssignRequest",
    "AuditEntryRead",
    "AuditListResponse",
    "BulkAssignRequest",
    "BulkAssignResponse",
    "CaseDetail",
    "CaseIntake",
    "CaseListResponse",
    "CaseRead",
    "CaseStatsRead",
    "ChainVerificationRead",
    "ChangeFeedResponse",
    "IntakeResponse",
    "MessageAppendResponse",
    "MessageCreate",
    "MessageRead",
    "MutationResponse",
    "OperatorSession",
    "TokenPayload",
    "TransitionRequest",
]
