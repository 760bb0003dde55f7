"""Case store - persistence and the only mutation path for cases.

``create`` and ``update`` are the two write operations. Both pair the case
change with its AuditEntry in one transaction: either both commit or
neither does. Updates to the same case are serialized by a per-ID lock
(plus a row lock on PostgreSQL); updates to different cases never contend.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from uuid import UUID

from sqlalchemy import String, asc, cast, desc, func, or_, select, text
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from casetriage.core import transitions
from casetriage.core.config import settings
from casetriage.core.constants import CASE_NUMBER_PREFIXES
from casetriage.core.locks import LockTimeout, case_locks
from casetriage.core.structured_logging import build_log_context
from casetriage.db.enums import (
    TERMINAL_STATUSES,
    AuditAction,
    CaseCategory,
    CaseKind,
    CaseStatus,
    Severity,
)
from casetriage.db.models import AuditEntry, Case
from casetriage.services import audit_service
from casetriage.services.errors import (
    AuditWriteError,
    CaseClosedError,
    CaseNotFoundError,
    InvalidTransitionError,
    StoreTimeoutError,
    ValidationFailedError,
)

logger = logging.getLogger(__name__)

Mutator = Callable[[Case], None]


@dataclass
class UpdateResult:
    """Case after a mutation plus the AuditEntry it produced (None for no-ops)."""

    case: Case
    audit_entry: AuditEntry | None = None

    @property
    def audit_entry_id(self) -> int | None:
        return self.audit_entry.id if self.audit_entry else None


@dataclass(frozen=True)
class CaseFilters:
    status: str | None = None
    priority: str | None = None  # severity
    category: str | None = None
    kind: str | None = None
    assigned_to: str | None = None
    subject_user_id: str | None = None
    tag: str | None = None
    q: str | None = None


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _next_timestamp(previous: datetime | None) -> datetime:
    """Wall-clock now, nudged forward so a case's timestamps never repeat."""
    now = _now_utc()
    if previous is not None and now <= previous:
        return previous + timedelta(microseconds=1)
    return now


def _timeout_error(case_id: Any, exc: Exception) -> StoreTimeoutError:
    return StoreTimeoutError(f"Case store unavailable for case {case_id}", case_id=case_id, cause=exc)


# =============================================================================
# Case numbers
# =============================================================================

def generate_case_number(db: Session, kind: CaseKind | str) -> str:
    """
    Next sequential case number for a kind (D00001, T00001, ...).

    Atomic INSERT ... ON CONFLICT increment, so concurrent intakes never
    share a number. Runs in the caller's transaction.
    """
    kind = CaseKind(kind)
    result = db.execute(
        text("""
            INSERT INTO case_counters (kind, current_value)
            VALUES (:kind, 1)
            ON CONFLICT (kind)
            DO UPDATE SET current_value = case_counters.current_value + 1
            RETURNING current_value
        """),
        {"kind": kind.value},
    ).scalar_one_or_none()
    if result is None:
        raise RuntimeError("Failed to generate case number")
    return f"{CASE_NUMBER_PREFIXES[kind.value]}{result:05d}"


# =============================================================================
# Invariants
# =============================================================================

def _normalize(case: Case) -> None:
    """Derived columns kept in sync with the fields mutators touch."""
    case.severity_rank = Severity(case.severity).rank if case.severity else 0
    case.tags = sorted({str(tag).strip() for tag in case.tags or [] if str(tag).strip()})


def _check_invariants(case: Case, before: dict[str, Any], override: bool) -> None:
    if case.kind != before["kind"]:
        raise ValidationFailedError(
            "Case kind is immutable", case_id=case.id, kind=before["kind"]
        )

    try:
        new_status = CaseStatus(case.status)
    except ValueError as exc:
        raise ValidationFailedError(f"Unknown status '{case.status}'") from exc

    old_status = CaseStatus(before["status"])
    if new_status is not old_status and not transitions.is_reachable(
        case.kind, old_status, new_status, case, override=override
    ):
        raise InvalidTransitionError(
            f"Transition {old_status.value} -> {new_status.value} is not allowed",
            case_id=case.id,
            kind=case.kind,
        )

    if new_status in TERMINAL_STATUSES and not (case.resolution or "").strip():
        raise ValidationFailedError(
            f"Resolution is required to enter '{new_status.value}'", case_id=case.id
        )


# =============================================================================
# Write path
# =============================================================================

def create(
    db: Session,
    *,
    kind: CaseKind | str,
    fields: dict[str, Any],
    category: str | None,
    severity: str | None,
    actor_id: str,
    subject_user_id: str | None = None,
    status: CaseStatus = CaseStatus.NEW,
    evidence: list[dict[str, Any]] | None = None,
    tags: list[str] | None = None,
    is_synthetic: bool = False,
    action: AuditAction = AuditAction.CREATED,
    details: dict[str, Any] | None = None,
) -> UpdateResult:
    """
    Insert a case and its creation AuditEntry.

    ``status`` may be any state legally reachable from ``new`` (intake
    auto-opens classified cases in the same entry).
    """
    kind = CaseKind(kind)
    now = _now_utc()
    try:
        case = Case(
            case_number=generate_case_number(db, kind),
            kind=kind.value,
            subject_user_id=subject_user_id,
            category=category,
            severity=severity,
            status=CaseStatus.NEW.value,
            evidence=list(evidence or []),
            tags=list(tags or []),
            fields=dict(fields),
            is_synthetic=is_synthetic,
            message_count=0,
            created_at=now,
            updated_at=now,
        )
        before = audit_service.case_snapshot(case)
        case.status = CaseStatus(status).value
        _normalize(case)
        _check_invariants(case, before, override=False)

        db.add(case)
        db.flush()
        try:
            entry = audit_service.record(
                db,
                case=case,
                actor_id=actor_id,
                action=action,
                before=None,
                after=audit_service.case_snapshot(case),
                details=details,
            )
        except SQLAlchemyError as exc:
            raise AuditWriteError("Audit append failed; case not created", cause=exc) from exc
        db.commit()
    except OperationalError as exc:
        db.rollback()
        raise _timeout_error("new", exc) from exc
    except Exception:
        db.rollback()
        raise

    logger.info(
        "Case %s created (%s)",
        case.case_number,
        case.status,
        extra=build_log_context(case_id=str(case.id), actor_id=actor_id, action=action.value),
    )
    return UpdateResult(case=case, audit_entry=entry)


def _load_for_update(db: Session, case_id: UUID) -> Case:
    case = db.execute(
        select(Case)
        .where(Case.id == case_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if case is None:
        raise CaseNotFoundError(f"Case {case_id} not found", case_id=case_id)
    return case


def _apply(
    db: Session,
    case_id: UUID,
    mutator: Mutator,
    *,
    actor_id: str,
    action: AuditAction,
    details: dict[str, Any] | None,
    bulk_operation_id: UUID | None,
    override: bool,
) -> UpdateResult:
    case = _load_for_update(db, case_id)
    before = audit_service.case_snapshot(case)
    before_message_count = case.message_count
    previous_updated_at = case.updated_at

    mutator(case)
    _normalize(case)
    after = audit_service.case_snapshot(case)
    if after == before and case.message_count == before_message_count:
        # Idempotent replay: discard the untouched attributes and release the row lock
        db.rollback()
        return UpdateResult(case=case)

    if before["status"] == CaseStatus.CLOSED.value:
        raise CaseClosedError(f"Case {case.case_number} is closed", case_id=case.id)

    _check_invariants(case, before, override)

    case.updated_at = _next_timestamp(previous_updated_at)
    if case.status != before["status"] and case.status == CaseStatus.CLOSED.value:
        case.closed_at = case.updated_at

    db.flush()  # Stale versions surface here, before the audit append

    entry = None
    if after != before:
        try:
            entry = audit_service.record(
                db,
                case=case,
                actor_id=actor_id,
                action=action,
                before=before,
                after=after,
                details=details,
                bulk_operation_id=bulk_operation_id,
            )
        except SQLAlchemyError as exc:
            raise AuditWriteError(
                "Audit append failed; mutation rolled back", case_id=case.id, cause=exc
            ) from exc
    db.commit()
    return UpdateResult(case=case, audit_entry=entry)


def update(
    db: Session,
    case_id: UUID,
    mutator: Mutator,
    *,
    actor_id: str,
    action: AuditAction,
    details: dict[str, Any] | None = None,
    bulk_operation_id: UUID | None = None,
    override: bool = False,
) -> UpdateResult:
    """
    Apply ``mutator`` to the locked case and commit it with its AuditEntry.

    The mutator edits the ORM object in place (always assigning new
    list/dict values for JSON columns). Invariants are re-checked after it
    runs; any failure, including the audit append, rolls everything back
    and leaves the case untouched. A mutator that changes nothing is a
    no-op: no AuditEntry and no ``updated_at`` bump. Changes outside the
    audited snapshot (message count) advance ``updated_at`` without an
    entry.

    Raises:
        CaseNotFoundError, CaseClosedError, InvalidTransitionError,
        ValidationFailedError, StoreTimeoutError, AuditWriteError
    """
    log_context = build_log_context(case_id=str(case_id), actor_id=actor_id, action=action.value)
    try:
        with case_locks.hold(str(case_id), settings.STORE_LOCK_TIMEOUT_SECONDS):
            attempts = max(settings.STORE_MAX_VERSION_RETRIES, 1)
            attempt = 0
            while True:
                attempt += 1
                try:
                    result = _apply(
                        db,
                        case_id,
                        mutator,
                        actor_id=actor_id,
                        action=action,
                        details=details,
                        bulk_operation_id=bulk_operation_id,
                        override=override,
                    )
                except StaleDataError as exc:
                    db.rollback()
                    if attempt == attempts:
                        raise _timeout_error(case_id, exc) from exc
                    logger.info("Stale case version, retrying (%s/%s)", attempt, attempts, extra=log_context)
                    continue
                except OperationalError as exc:
                    db.rollback()
                    raise _timeout_error(case_id, exc) from exc
                except Exception:
                    db.rollback()
                    raise
                if result.audit_entry is not None:
                    logger.info("Case %s mutated", result.case.case_number, extra=log_context)
                return result
    except LockTimeout as exc:
        logger.warning("Case lock timeout", extra=log_context)
        raise _timeout_error(case_id, exc) from exc


# =============================================================================
# Read path
# =============================================================================

def get(db: Session, case_id: UUID) -> Case:
    case = db.get(Case, case_id)
    if case is None:
        raise CaseNotFoundError(f"Case {case_id} not found", case_id=case_id)
    return case


def _parse_filter(enum_cls, name: str, value: str):
    try:
        return enum_cls(value.strip().lower())
    except ValueError as exc:
        raise ValidationFailedError(f"Unknown {name} '{value}'") from exc


def apply_filters(query, filters: CaseFilters):
    if filters.status:
        try:
            status = CaseStatus.parse(filters.status)
        except ValueError as exc:
            raise ValidationFailedError(f"Unknown status '{filters.status}'") from exc
        query = query.where(Case.status == status.value)
    if filters.priority:
        query = query.where(Case.severity == _parse_filter(Severity, "priority", filters.priority).value)
    if filters.category:
        query = query.where(Case.category == _parse_filter(CaseCategory, "category", filters.category).value)
    if filters.kind:
        query = query.where(Case.kind == _parse_filter(CaseKind, "kind", filters.kind).value)
    if filters.assigned_to:
        query = query.where(Case.assigned_to == filters.assigned_to)
    if filters.subject_user_id:
        query = query.where(Case.subject_user_id == filters.subject_user_id)
    if filters.tag:
        # Tags are stored as a JSON list of strings
        query = query.where(cast(Case.tags, String).like(f'%"{filters.tag}"%'))
    if filters.q:
        search = f"%{filters.q}%"
        query = query.where(
            or_(
                Case.case_number.ilike(search),
                Case.fields["subject"].as_string().ilike(search),
                Case.fields["description"].as_string().ilike(search),
            )
        )
    return query


SORTABLE_COLUMNS = {
    "created_at": Case.created_at,
    "updated_at": Case.updated_at,
    "severity": Case.severity_rank,
    "case_number": Case.case_number,
}


def list_cases(
    db: Session,
    filters: CaseFilters,
    sort_by: str | None = None,
    sort_order: str = "desc",
    page: int = 1,
    per_page: int = 20,
) -> tuple[list[Case], int]:
    """
    Filtered, sorted page of cases.

    Returns:
        (cases, total_count)
    """
    query = apply_filters(select(Case), filters)

    total = db.execute(select(func.count()).select_from(query.subquery())).scalar_one()

    order_func = asc if sort_order == "asc" else desc
    column = SORTABLE_COLUMNS.get(sort_by or "created_at", Case.created_at)
    query = query.order_by(order_func(column), order_func(Case.created_at), Case.id)

    offset = (page - 1) * per_page
    items = db.execute(query.offset(offset).limit(per_page)).scalars().all()
    return list(items), total


def case_stats(db: Session) -> dict[str, Any]:
    """Counts by status, kind and severity plus the unassigned queue size."""

    def _grouped(column) -> dict[str, int]:
        rows = db.execute(select(column, func.count()).group_by(column)).all()
        return {value: count for value, count in rows if value is not None}

    terminal = [status.value for status in TERMINAL_STATUSES]
    queue_size = db.execute(
        select(func.count())
        .select_from(Case)
        .where(Case.assigned_to.is_(None))
        .where(Case.status.notin_(terminal))
    ).scalar_one()

    return {
        "total": db.execute(select(func.count()).select_from(Case)).scalar_one(),
        "by_status": _grouped(Case.status),
        "by_kind": _grouped(Case.kind),
        "by_severity": _grouped(Case.severity),
        "unassigned": queue_size,
    }


__all__ = [
    "CaseFilters",
    "Mutator",
    "UpdateResult",
    "case_stats",
    "create",
    "generate_case_number",
    "get",
    "list_cases",
    "update",
]
