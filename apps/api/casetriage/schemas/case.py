"""Pydantic schemas for cases, intake payloads and the message thread."""

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Literal, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from casetriage.db.enums import (
    CaseCategory,
    ClaimType,
    DeclaredPriority,
    DetectorType,
    DisputeType,
    MessageSender,
    SupportChannel,
    SupportTopic,
)


# =============================================================================
# Kind-specific fields
# =============================================================================

class _KindFields(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # Explicit routing category; overrides the rule-derived one
    category: CaseCategory | None = None


class DisputeFields(_KindFields):
    dispute_type: DisputeType
    subject: str = Field(..., min_length=1, max_length=255)
    description: str = Field("", max_length=5000)
    match_id: str | None = Field(None, max_length=100)
    transaction_id: str | None = Field(None, max_length=100)
    amount: Decimal | None = Field(None, ge=0)
    declared_priority: DeclaredPriority | None = None


class SupportTicketFields(_KindFields):
    channel: SupportChannel = SupportChannel.SUPPORT_TICKET
    topic: SupportTopic = SupportTopic.GENERAL
    subject: str = Field(..., min_length=1, max_length=255)
    description: str = Field("", max_length=5000)
    declared_priority: DeclaredPriority | None = None


class ClaimFields(_KindFields):
    claim_type: ClaimType
    subject: str = Field(..., min_length=1, max_length=255)
    description: str = Field("", max_length=5000)
    amount: Decimal | None = Field(None, ge=0)
    declared_priority: DeclaredPriority | None = None


class AntiCheatFlagFields(_KindFields):
    detector: DetectorType
    game_id: str | None = Field(None, max_length=100)
    match_id: str | None = Field(None, max_length=100)
    signal_strength: float = Field(0.5, ge=0, le=1)
    signal_count: int = Field(1, ge=1)
    description: str = Field("", max_length=5000)


FIELDS_MODELS: dict[str, type[_KindFields]] = {
    "dispute": DisputeFields,
    "support_ticket": SupportTicketFields,
    "claim": ClaimFields,
    "anti_cheat_flag": AntiCheatFlagFields,
}


# =============================================================================
# Intake (discriminated on kind)
# =============================================================================

class _IntakeBase(BaseModel):
    subject_user_id: str | None = Field(None, max_length=100)
    evidence: list[str] = Field(default_factory=list, max_length=50)  # blob IDs
    tags: list[str] = Field(default_factory=list, max_length=50)

    @field_validator("tags")
    @classmethod
    def strip_tags(cls, v: list[str]) -> list[str]:
        return [tag.strip() for tag in v if tag and tag.strip()]


class DisputeIntake(_IntakeBase):
    kind: Literal["dispute"]
    fields: DisputeFields


class SupportTicketIntake(_IntakeBase):
    kind: Literal["support_ticket"]
    fields: SupportTicketFields


class ClaimIntake(_IntakeBase):
    kind: Literal["claim"]
    fields: ClaimFields


class AntiCheatFlagIntake(_IntakeBase):
    kind: Literal["anti_cheat_flag"]
    fields: AntiCheatFlagFields


CaseIntake = Annotated[
    Union[DisputeIntake, SupportTicketIntake, ClaimIntake, AntiCheatFlagIntake],
    Field(discriminator="kind"),
]


# =============================================================================
# Requests
# =============================================================================

class TransitionRequest(BaseModel):
    status: str = Field(..., min_length=1, max_length=30)
    resolution: str | None = Field(None, max_length=5000)
    reason: str | None = Field(None, max_length=1000)
    override: bool = False


class AssignRequest(BaseModel):
    operator_id: str = Field(..., min_length=1, max_length=100)
    reassign: bool = False


class BulkAssignRequest(BaseModel):
    case_ids: list[UUID] = Field(..., min_length=1, max_length=500)
    operator_id: str = Field(..., min_length=1, max_length=100)
    reassign: bool = False


class ReclassifyRequest(BaseModel):
    """Partial field update; keys set to null are removed."""
    fields: dict[str, Any] = Field(default_factory=dict)


class EvidenceAddRequest(BaseModel):
    blob_ids: list[str] = Field(..., min_length=1, max_length=50)


class TagsUpdateRequest(BaseModel):
    add: list[str] = Field(default_factory=list)
    remove: list[str] = Field(default_factory=list)


class MessageCreate(BaseModel):
    """
    Thread append. Staff messages are authored by the calling operator;
    user messages relayed by the console carry the user's ID.
    """
    sender: MessageSender = MessageSender.STAFF
    content: str = Field(..., min_length=1, max_length=10000)
    author_id: str | None = Field(None, max_length=100)
    attachments: list[str] = Field(default_factory=list, max_length=20)


# =============================================================================
# Responses
# =============================================================================

class UserDisplay(BaseModel):
    user_id: str
    username: str
    email: str | None = None


class CaseRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    case_number: str
    kind: str
    subject_user_id: str | None = None
    category: str | None = None
    severity: str | None = None
    status: str
    assigned_to: str | None = None
    assigned_at: datetime | None = None
    resolution: str | None = None
    evidence: list[dict[str, Any]] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    fields: dict[str, Any] = Field(default_factory=dict)
    is_synthetic: bool = False
    message_count: int = 0
    closed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    version: int


class CaseDetail(CaseRead):
    allowed_transitions: list[str] = Field(default_factory=list)
    subject_display: UserDisplay | None = None
    assignee_display: UserDisplay | None = None


class MutationResponse(BaseModel):
    """Updated case plus the AuditEntry the call produced (null for a no-op)."""
    case: CaseRead
    audit_entry_id: int | None = None


class IntakeResponse(MutationResponse):
    rule: str
    synthetic_case_id: UUID | None = None


class CaseListResponse(BaseModel):
    items: list[CaseRead]
    total: int
    page: int
    per_page: int


class CaseStatsRead(BaseModel):
    total: int
    by_status: dict[str, int]
    by_kind: dict[str, int]
    by_severity: dict[str, int]
    unassigned: int


class WorkloadItem(BaseModel):
    operator_id: str
    open_cases: int
    by_status: dict[str, int]


class BulkAssignItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    case_id: UUID
    ok: bool
    error: str | None = None
    detail: str | None = None
    audit_entry_id: int | None = None
    status: str | None = None
    assigned_to: str | None = None


class BulkAssignResponse(BaseModel):
    bulk_operation_id: UUID
    results: list[BulkAssignItem]
    succeeded: int
    failed: int


class MessageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    case_id: UUID
    seq: int
    sender: str
    author_id: str | None = None
    content: str
    attachments: list[dict[str, Any]] = Field(default_factory=list)
    created_at: datetime


class MessageAppendResponse(BaseModel):
    message: MessageRead
    case: CaseRead
    audit_entry_id: int | None = None
