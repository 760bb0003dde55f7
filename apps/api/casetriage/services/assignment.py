"""Assignment & queue manager.

The operator queue is a view over unassigned, non-terminal cases ordered
by (severity desc, created_at asc). It is recomputed on every read.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

import httpx
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from casetriage.db.enums import TERMINAL_STATUSES, AuditAction, CaseStatus
from casetriage.db.models import Case
from casetriage.services import case_store
from casetriage.services.case_store import UpdateResult
from casetriage.services.collaborators import UserProfile, get_collaborators, notify_safely
from casetriage.services.errors import (
    AlreadyAssignedError,
    CaseClosedError,
    ErrorKind,
    OperatorNotFoundError,
    StoreTimeoutError,
    TriageError,
)

logger = logging.getLogger(__name__)

_TERMINAL = [status.value for status in TERMINAL_STATUSES]


@dataclass
class BulkItemResult:
    """Outcome of one item in a bulk operation."""

    case_id: UUID
    ok: bool
    error: str | None = None  # ErrorKind value
    detail: str | None = None
    audit_entry_id: int | None = None
    status: str | None = None
    assigned_to: str | None = None


def require_operator(operator_id: str) -> UserProfile:
    """Resolve an operator through the identity collaborator."""
    if not operator_id:
        raise OperatorNotFoundError("Operator ID is required")
    try:
        profile = get_collaborators().identity.resolve_user(operator_id)
    except httpx.HTTPError as exc:
        raise StoreTimeoutError("Identity service unavailable", operator_id=operator_id) from exc
    if profile is None:
        raise OperatorNotFoundError(f"Operator {operator_id} not found", operator_id=operator_id)
    return profile


def assign(
    db: Session,
    case_id: UUID,
    operator_id: str,
    *,
    actor_id: str,
    reassign: bool = False,
    bulk_operation_id: UUID | None = None,
) -> UpdateResult:
    """
    Bind a case to an operator.

    Fails with AlreadyAssigned when someone else holds the case and
    ``reassign`` is false. Assigning the current assignee again is a no-op.
    A ``new``/``open`` case moves to ``investigating`` in the same entry.

    Raises:
        OperatorNotFoundError, CaseNotFoundError, CaseClosedError,
        AlreadyAssignedError, StoreTimeoutError
    """
    require_operator(operator_id)
    current = case_store.get(db, case_id)
    action = AuditAction.REASSIGNED if reassign and current.assigned_to else AuditAction.ASSIGNED
    details: dict[str, Any] = {"operator_id": operator_id}

    def mutator(case: Case) -> None:
        status = CaseStatus(case.status)
        if status in TERMINAL_STATUSES:
            raise CaseClosedError(
                f"Case {case.case_number} is {status.value}", case_id=case.id, status=status.value
            )
        if case.assigned_to == operator_id:
            return
        if case.assigned_to and not reassign:
            raise AlreadyAssignedError(
                f"Case {case.case_number} is already assigned",
                case_id=case.id,
                assigned_to=case.assigned_to,
            )
        if case.assigned_to:
            details["previous_assignee"] = case.assigned_to
        case.assigned_to = operator_id
        case.assigned_at = datetime.now(timezone.utc)
        if status in (CaseStatus.NEW, CaseStatus.OPEN):
            details["from"] = status.value
            case.status = CaseStatus.INVESTIGATING.value

    result = case_store.update(
        db,
        case_id,
        mutator,
        actor_id=actor_id,
        action=action,
        details=details,
        bulk_operation_id=bulk_operation_id,
    )
    if result.audit_entry is not None:
        notify_safely(
            operator_id,
            {
                "type": "case_assigned",
                "case_id": str(result.case.id),
                "case_number": result.case.case_number,
            },
        )
    return result


def bulk_assign(
    db: Session,
    case_ids: list[UUID],
    operator_id: str,
    *,
    actor_id: str,
    reassign: bool = False,
) -> tuple[UUID, list[BulkItemResult]]:
    """
    Assign each case independently; one failure never aborts its siblings.

    Returns:
        (bulk_operation_id, per-item results in request order)
    """
    bulk_operation_id = uuid.uuid4()
    results: list[BulkItemResult] = []
    seen: set[UUID] = set()

    for case_id in case_ids:
        if case_id in seen:
            results.append(
                BulkItemResult(
                    case_id=case_id,
                    ok=False,
                    error=ErrorKind.VALIDATION_FAILED.value,
                    detail="Duplicate case ID in request",
                )
            )
            continue
        seen.add(case_id)
        try:
            outcome = assign(
                db,
                case_id,
                operator_id,
                actor_id=actor_id,
                reassign=reassign,
                bulk_operation_id=bulk_operation_id,
            )
        except TriageError as exc:
            results.append(
                BulkItemResult(case_id=case_id, ok=False, error=exc.kind.value, detail=exc.message)
            )
            continue
        results.append(
            BulkItemResult(
                case_id=case_id,
                ok=True,
                audit_entry_id=outcome.audit_entry_id,
                status=outcome.case.status,
                assigned_to=outcome.case.assigned_to,
            )
        )

    succeeded = sum(1 for item in results if item.ok)
    logger.info(
        "Bulk assign %s: %s/%s succeeded (operator=%s)",
        bulk_operation_id,
        succeeded,
        len(results),
        operator_id,
    )
    return bulk_operation_id, results


def list_queue(
    db: Session,
    page: int = 1,
    per_page: int = 20,
    kind: str | None = None,
) -> tuple[list[Case], int]:
    """Unassigned, non-terminal cases: most severe first, then oldest first."""
    query = (
        select(Case)
        .where(Case.assigned_to.is_(None))
        .where(Case.status.notin_(_TERMINAL))
    )
    query = case_store.apply_filters(query, case_store.CaseFilters(kind=kind))

    total = db.execute(select(func.count()).select_from(query.subquery())).scalar_one()
    offset = (page - 1) * per_page
    items = db.execute(
        query.order_by(Case.severity_rank.desc(), Case.created_at.asc(), Case.id)
        .offset(offset)
        .limit(per_page)
    ).scalars().all()
    return list(items), total


def operator_workload(db: Session) -> list[dict[str, Any]]:
    """Open (non-terminal) case counts per operator, busiest first."""
    rows = db.execute(
        select(Case.assigned_to, Case.status, func.count())
        .where(Case.assigned_to.isnot(None))
        .where(Case.status.notin_(_TERMINAL))
        .group_by(Case.assigned_to, Case.status)
    ).all()

    workload: dict[str, dict[str, Any]] = {}
    for operator_id, status, count in rows:
        entry = workload.setdefault(
            operator_id, {"operator_id": operator_id, "open_cases": 0, "by_status": {}}
        )
        entry["open_cases"] += count
        entry["by_status"][status] = count
    return sorted(workload.values(), key=lambda item: (-item["open_cases"], item["operator_id"]))
