"""Audit router - API endpoints for viewing and verifying the audit log."""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from casetriage.core.deps import get_current_operator, get_db, require_roles
from casetriage.db.enums import Role
from casetriage.schemas.audit import AuditEntryRead, AuditListResponse, ChainVerificationRead
from casetriage.schemas.auth import OperatorSession
from casetriage.services import audit_service
from casetriage.services.audit_service import AuditFilters

router = APIRouter(prefix="/audit", tags=["Audit"])


@router.get("", response_model=AuditListResponse)
def list_audit_entries(
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=100),
    case_id: UUID | None = Query(None, description="Filter by case"),
    actor_id: str | None = Query(None, description="Filter by actor"),
    action: str | None = Query(None, description="Filter by action"),
    bulk_operation_id: UUID | None = Query(None, description="Entries of one bulk operation"),
    start_date: datetime | None = Query(None, description="Filter entries after this date"),
    end_date: datetime | None = Query(None, description="Filter entries before this date"),
    db: Session = Depends(get_db),
    session: OperatorSession = Depends(get_current_operator),
) -> AuditListResponse:
    """
    List audit entries, newest first.

    Filters: case, actor, action, bulk operation, date range
    """
    filters = AuditFilters(
        case_id=case_id,
        actor_id=actor_id,
        action=action,
        bulk_operation_id=bulk_operation_id,
        since=start_date,
        until=end_date,
    )
    items, total = audit_service.list_entries(db, filters, page=page, per_page=per_page)
    return AuditListResponse(
        items=[AuditEntryRead.model_validate(entry) for entry in items],
        total=total,
        page=page,
        per_page=per_page,
    )


@router.get("/verify", response_model=ChainVerificationRead)
def verify_audit_chain(
    case_id: UUID | None = Query(None, description="Verify a single case chain"),
    db: Session = Depends(get_db),
    session: OperatorSession = Depends(require_roles([Role.ADMIN])),
) -> ChainVerificationRead:
    """
    Recompute the hash chain.

    Requires: Admin role
    """
    return ChainVerificationRead.model_validate(audit_service.verify_chain(db, case_id=case_id))
