"""Cases router - intake, triage, workflow and the message thread."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from casetriage.core.deps import get_current_operator, get_db, require_csrf_header, require_roles
from casetriage.db.enums import ROLES_CAN_OVERRIDE, MessageSender, Role
from casetriage.db.models import Case
from casetriage.schemas.audit import AuditEntryRead, ChangeFeedResponse
from casetriage.schemas.auth import OperatorSession
from casetriage.schemas.case import (
    AssignRequest,
    BulkAssignItem,
    BulkAssignRequest,
    BulkAssignResponse,
    CaseDetail,
    CaseIntake,
    CaseListResponse,
    CaseRead,
    CaseStatsRead,
    EvidenceAddRequest,
    IntakeResponse,
    MessageAppendResponse,
    MessageCreate,
    MessageRead,
    MutationResponse,
    ReclassifyRequest,
    TagsUpdateRequest,
    TransitionRequest,
    UserDisplay,
    WorkloadItem,
)
from casetriage.services import (
    assignment,
    audit_service,
    case_store,
    intake_service,
    messaging,
    workflow,
)
from casetriage.services.case_store import CaseFilters, UpdateResult
from casetriage.services.collaborators import resolve_display

router = APIRouter(prefix="/cases", tags=["Cases"])


def _mutation(result: UpdateResult) -> MutationResponse:
    return MutationResponse(
        case=CaseRead.model_validate(result.case),
        audit_entry_id=result.audit_entry_id,
    )


def _display(user_id: str | None) -> UserDisplay | None:
    profile = resolve_display(user_id)
    if profile is None:
        return None
    return UserDisplay(user_id=profile.user_id, username=profile.username, email=profile.email)


def _detail(case: Case, session: OperatorSession) -> CaseDetail:
    base = CaseRead.model_validate(case)
    return CaseDetail(
        **base.model_dump(),
        allowed_transitions=workflow.allowed_transitions(
            case.kind, case.status, include_override=session.role in ROLES_CAN_OVERRIDE
        ),
        subject_display=_display(case.subject_user_id),
        assignee_display=_display(case.assigned_to),
    )


# =============================================================================
# Intake & listing
# =============================================================================

@router.post(
    "",
    response_model=IntakeResponse,
    status_code=201,
    dependencies=[Depends(require_csrf_header)],
)
def create_case(
    data: CaseIntake,
    session: OperatorSession = Depends(get_current_operator),
    db: Session = Depends(get_db),
):
    """Intake: validate, classify and open a case (anti-cheat flags also run clustering)."""
    result = intake_service.intake(db, data, actor_id=session.operator_id)
    synthetic = result.cluster.synthetic_case if result.cluster else None
    return IntakeResponse(
        case=CaseRead.model_validate(result.case),
        audit_entry_id=result.audit_entry_id,
        rule=result.classification.rule,
        synthetic_case_id=synthetic.id if synthetic is not None else None,
    )


@router.get("", response_model=CaseListResponse)
def list_cases(
    status: str | None = Query(None),
    priority: str | None = Query(None, description="Severity"),
    category: str | None = Query(None),
    kind: str | None = Query(None),
    assigned_to: str | None = Query(None),
    subject_user_id: str | None = Query(None),
    tag: str | None = Query(None),
    q: str | None = Query(None, max_length=100),
    sort_by: str | None = Query(None, description="created_at, updated_at, severity, case_number"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    session: OperatorSession = Depends(get_current_operator),
    db: Session = Depends(get_db),
):
    filters = CaseFilters(
        status=status,
        priority=priority,
        category=category,
        kind=kind,
        assigned_to=assigned_to,
        subject_user_id=subject_user_id,
        tag=tag,
        q=q,
    )
    items, total = case_store.list_cases(
        db, filters, sort_by=sort_by, sort_order=sort_order, page=page, per_page=per_page
    )
    return CaseListResponse(
        items=[CaseRead.model_validate(case) for case in items],
        total=total,
        page=page,
        per_page=per_page,
    )


@router.get("/stats", response_model=CaseStatsRead)
def get_case_stats(
    session: OperatorSession = Depends(get_current_operator),
    db: Session = Depends(get_db),
):
    return CaseStatsRead(**case_store.case_stats(db))


@router.get("/queue", response_model=CaseListResponse)
def get_queue(
    kind: str | None = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    session: OperatorSession = Depends(get_current_operator),
    db: Session = Depends(get_db),
):
    """Unassigned cases, most severe then oldest first."""
    items, total = assignment.list_queue(db, page=page, per_page=per_page, kind=kind)
    return CaseListResponse(
        items=[CaseRead.model_validate(case) for case in items],
        total=total,
        page=page,
        per_page=per_page,
    )


@router.get("/workload", response_model=list[WorkloadItem])
def get_workload(
    session: OperatorSession = Depends(get_current_operator),
    db: Session = Depends(get_db),
):
    return [WorkloadItem(**item) for item in assignment.operator_workload(db)]


@router.get("/changes", response_model=ChangeFeedResponse)
def get_changes(
    after: int = Query(0, ge=0, description="Last audit entry ID already seen"),
    limit: int = Query(100, ge=1, le=500),
    session: OperatorSession = Depends(get_current_operator),
    db: Session = Depends(get_db),
):
    """Change feed over the audit sequence; poll with the returned cursor."""
    entries = audit_service.changes_since(db, after_id=after, limit=limit)
    return ChangeFeedResponse(
        items=[AuditEntryRead.model_validate(entry) for entry in entries],
        next_after=entries[-1].id if entries else after,
    )


@router.post(
    "/bulk/assign",
    response_model=BulkAssignResponse,
    dependencies=[Depends(require_csrf_header)],
)
def bulk_assign_cases(
    data: BulkAssignRequest,
    session: OperatorSession = Depends(get_current_operator),
    db: Session = Depends(get_db),
):
    """Assign many cases; failures are reported per item."""
    bulk_operation_id, results = assignment.bulk_assign(
        db,
        data.case_ids,
        data.operator_id,
        actor_id=session.operator_id,
        reassign=data.reassign,
    )
    succeeded = sum(1 for item in results if item.ok)
    return BulkAssignResponse(
        bulk_operation_id=bulk_operation_id,
        results=[BulkAssignItem.model_validate(item) for item in results],
        succeeded=succeeded,
        failed=len(results) - succeeded,
    )


# =============================================================================
# Single case
# =============================================================================

@router.get("/{case_id}", response_model=CaseDetail)
def get_case(
    case_id: UUID,
    session: OperatorSession = Depends(get_current_operator),
    db: Session = Depends(get_db),
):
    return _detail(case_store.get(db, case_id), session)


@router.patch(
    "/{case_id}",
    response_model=MutationResponse,
    dependencies=[Depends(require_csrf_header)],
)
def reclassify_case(
    case_id: UUID,
    data: ReclassifyRequest,
    session: OperatorSession = Depends(get_current_operator),
    db: Session = Depends(get_db),
):
    """Update kind-specific fields and re-run classification (severity never drops)."""
    result = intake_service.reclassify(db, case_id, actor_id=session.operator_id, updates=data.fields)
    return _mutation(result)


@router.delete(
    "/{case_id}",
    response_model=MutationResponse,
    dependencies=[Depends(require_csrf_header)],
)
def delete_case(
    case_id: UUID,
    reason: str = Query(..., min_length=1, max_length=1000),
    session: OperatorSession = Depends(require_roles([Role.ADMIN])),
    db: Session = Depends(get_db),
):
    """Soft delete: close with the deletion tag. History is kept."""
    result = workflow.soft_delete(db, case_id, actor_id=session.operator_id, reason=reason)
    return _mutation(result)


@router.post(
    "/{case_id}/transition",
    response_model=MutationResponse,
    dependencies=[Depends(require_csrf_header)],
)
def transition_case(
    case_id: UUID,
    data: TransitionRequest,
    session: OperatorSession = Depends(get_current_operator),
    db: Session = Depends(get_db),
):
    if data.override and session.role not in ROLES_CAN_OVERRIDE:
        raise HTTPException(status_code=403, detail="Administrative override requires the admin role")
    result = workflow.transition(
        db,
        case_id,
        data.status,
        actor_id=session.operator_id,
        resolution=data.resolution,
        reason=data.reason,
        override=data.override,
    )
    return _mutation(result)


@router.post(
    "/{case_id}/assign",
    response_model=MutationResponse,
    dependencies=[Depends(require_csrf_header)],
)
def assign_case(
    case_id: UUID,
    data: AssignRequest,
    session: OperatorSession = Depends(get_current_operator),
    db: Session = Depends(get_db),
):
    result = assignment.assign(
        db,
        case_id,
        data.operator_id,
        actor_id=session.operator_id,
        reassign=data.reassign,
    )
    return _mutation(result)


@router.get("/{case_id}/messages", response_model=list[MessageRead])
def list_case_messages(
    case_id: UUID,
    session: OperatorSession = Depends(get_current_operator),
    db: Session = Depends(get_db),
):
    return [MessageRead.model_validate(message) for message in messaging.list_messages(db, case_id)]


@router.post(
    "/{case_id}/messages",
    response_model=MessageAppendResponse,
    status_code=201,
    dependencies=[Depends(require_csrf_header)],
)
def append_case_message(
    case_id: UUID,
    data: MessageCreate,
    session: OperatorSession = Depends(get_current_operator),
    db: Session = Depends(get_db),
):
    """Append to the thread. Staff replies are authored by the caller."""
    author_id = session.operator_id if data.sender is MessageSender.STAFF else data.author_id
    result = messaging.append_message(
        db,
        case_id,
        sender=data.sender,
        author_id=author_id,
        content=data.content,
        attachments=data.attachments,
    )
    return MessageAppendResponse(
        message=MessageRead.model_validate(result.message),
        case=CaseRead.model_validate(result.case),
        audit_entry_id=result.audit_entry_id,
    )


@router.post(
    "/{case_id}/evidence",
    response_model=MutationResponse,
    dependencies=[Depends(require_csrf_header)],
)
def add_case_evidence(
    case_id: UUID,
    data: EvidenceAddRequest,
    session: OperatorSession = Depends(get_current_operator),
    db: Session = Depends(get_db),
):
    result = intake_service.add_evidence(
        db, case_id, actor_id=session.operator_id, blob_ids=data.blob_ids
    )
    return _mutation(result)


@router.post(
    "/{case_id}/tags",
    response_model=MutationResponse,
    dependencies=[Depends(require_csrf_header)],
)
def update_case_tags(
    case_id: UUID,
    data: TagsUpdateRequest,
    session: OperatorSession = Depends(get_current_operator),
    db: Session = Depends(get_db),
):
    result = intake_service.update_tags(
        db, case_id, actor_id=session.operator_id, add=data.add, remove=data.remove
    )
    return _mutation(result)


@router.get("/{case_id}/audit", response_model=list[AuditEntryRead])
def get_case_audit(
    case_id: UUID,
    session: OperatorSession = Depends(get_current_operator),
    db: Session = Depends(get_db),
):
    """Oldest-first audit trail of one case."""
    case_store.get(db, case_id)
    return [AuditEntryRead.model_validate(entry) for entry in audit_service.case_history(db, case_id)]
