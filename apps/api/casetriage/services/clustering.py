"""Anti-cheat clustering rule.

When one user accumulates ``CLUSTER_FLAG_THRESHOLD`` unresolved anti-cheat
flags of severity medium or higher within ``CLUSTER_WINDOW_HOURS``, a single
synthetic critical case is raised that references the cluster. Individual
flags keep their own severity.

The window ends at the newest eligible flag rather than at wall-clock time,
so evaluating the same set of flags always yields the same decision.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from casetriage.core.config import settings
from casetriage.core.constants import CLUSTER_TAG, SYSTEM_ACTOR_ID
from casetriage.core.locks import LockTimeout, case_locks
from casetriage.db.enums import (
    TERMINAL_STATUSES,
    AuditAction,
    CaseCategory,
    CaseKind,
    CaseStatus,
    DetectorType,
    Severity,
)
from casetriage.db.models import Case
from casetriage.services import case_store
from casetriage.services.errors import StoreTimeoutError

logger = logging.getLogger(__name__)

_TERMINAL = [status.value for status in TERMINAL_STATUSES]


@dataclass
class ClusterDecision:
    subject_user_id: str
    member_ids: list[UUID] = field(default_factory=list)
    window_start: datetime | None = None
    window_end: datetime | None = None
    escalated: bool = False  # threshold reached
    created: bool = False  # a new synthetic case was raised by this call
    synthetic_case: Case | None = None


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _eligible_flags(db: Session, subject_user_id: str) -> list[Case]:
    """Unresolved, non-synthetic flags of severity >= medium, oldest first."""
    return list(
        db.execute(
            select(Case)
            .where(Case.kind == CaseKind.ANTI_CHEAT_FLAG.value)
            .where(Case.subject_user_id == subject_user_id)
            .where(Case.is_synthetic.is_(False))
            .where(Case.status.notin_(_TERMINAL))
            .where(Case.severity_rank >= Severity.MEDIUM.rank)
            .order_by(Case.created_at, Case.id)
        ).scalars().all()
    )


def _covering_synthetic(db: Session, subject_user_id: str, window_start: datetime) -> Case | None:
    """
    Synthetic case that already represents this window: one still open, or
    one whose anchor falls inside the window.
    """
    candidates = db.execute(
        select(Case)
        .where(Case.kind == CaseKind.ANTI_CHEAT_FLAG.value)
        .where(Case.subject_user_id == subject_user_id)
        .where(Case.is_synthetic.is_(True))
        .order_by(Case.created_at.desc())
    ).scalars().all()
    for case in candidates:
        if CaseStatus(case.status) not in TERMINAL_STATUSES:
            return case
        anchor = (case.fields or {}).get("window_end")
        if anchor and _as_utc(datetime.fromisoformat(anchor)) >= window_start:
            return case
    return None


def _extend_membership(db: Session, synthetic: Case, member_ids: list[UUID], actor_id: str) -> Case:
    known = set((synthetic.fields or {}).get("cluster_flag_ids", []))
    added = [str(member) for member in member_ids if str(member) not in known]
    if not added or CaseStatus(synthetic.status) in TERMINAL_STATUSES:
        return synthetic

    def mutator(case: Case) -> None:
        fields = dict(case.fields or {})
        fields["cluster_flag_ids"] = [*fields.get("cluster_flag_ids", []), *added]
        case.fields = fields

    result = case_store.update(
        db,
        synthetic.id,
        mutator,
        actor_id=actor_id,
        action=AuditAction.CLUSTER_ESCALATED,
        details={"added_flag_ids": added},
    )
    return result.case


def evaluate_cluster(
    db: Session,
    subject_user_id: str,
    actor_id: str = SYSTEM_ACTOR_ID,
) -> ClusterDecision:
    """
    Apply the clustering rule for one user.

    Idempotent: re-running over the same flags returns the existing
    synthetic case instead of raising another. Serialized per user.
    """
    decision = ClusterDecision(subject_user_id=subject_user_id)
    if not subject_user_id:
        return decision

    try:
        with case_locks.hold(f"cluster:{subject_user_id}", settings.STORE_LOCK_TIMEOUT_SECONDS):
            flags = _eligible_flags(db, subject_user_id)
            if not flags:
                return decision

            window_end = _as_utc(flags[-1].created_at)
            window_start = window_end - timedelta(hours=settings.CLUSTER_WINDOW_HOURS)
            members = [flag for flag in flags if _as_utc(flag.created_at) >= window_start]

            decision.member_ids = [flag.id for flag in members]
            decision.window_start = window_start
            decision.window_end = window_end
            existing = _covering_synthetic(db, subject_user_id, window_start)

            if len(members) < max(settings.CLUSTER_FLAG_THRESHOLD, 1):
                decision.synthetic_case = existing
                return decision

            decision.escalated = True
            if existing is not None:
                decision.synthetic_case = _extend_membership(db, existing, decision.member_ids, actor_id)
                return decision

            flag_ids = [str(member) for member in decision.member_ids]
            result = case_store.create(
                db,
                kind=CaseKind.ANTI_CHEAT_FLAG,
                fields={
                    "detector": DetectorType.PATTERN_DETECTION.value,
                    "description": (
                        f"{len(members)} anti-cheat flags within "
                        f"{settings.CLUSTER_WINDOW_HOURS}h for user {subject_user_id}"
                    ),
                    "signal_count": len(members),
                    "cluster_flag_ids": flag_ids,
                    "window_start": window_start.isoformat(),
                    "window_end": window_end.isoformat(),
                },
                category=CaseCategory.FRAUD.value,
                severity=Severity.CRITICAL.value,
                actor_id=actor_id,
                subject_user_id=subject_user_id,
                status=CaseStatus.OPEN,
                tags=[CLUSTER_TAG],
                is_synthetic=True,
                action=AuditAction.CLUSTER_ESCALATED,
                details={"cluster_flag_ids": flag_ids, "threshold": settings.CLUSTER_FLAG_THRESHOLD},
            )
            decision.created = True
            decision.synthetic_case = result.case
            logger.warning(
                "Anti-cheat cluster escalated for user=%s (%s flags) -> %s",
                subject_user_id,
                len(members),
                result.case.case_number,
            )
            return decision
    except LockTimeout as exc:
        raise StoreTimeoutError(
            f"Clustering busy for user {subject_user_id}", subject_user_id=subject_user_id
        ) from exc
