"""Workflow state machine service.

Status changes go through ``transition``; the legal table itself lives in
``casetriage.core.transitions`` so the case store can re-check it.
"""

import logging
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from casetriage.core import transitions
from casetriage.core.constants import DELETION_TAG
from casetriage.core.transitions import Requirement
from casetriage.db.enums import TERMINAL_STATUSES, AuditAction, CaseKind, CaseStatus
from casetriage.db.models import Case
from casetriage.services import case_store
from casetriage.services.case_store import UpdateResult
from casetriage.services.collaborators import notify_safely
from casetriage.services.errors import (
    CaseClosedError,
    InvalidTransitionError,
    ValidationFailedError,
)

logger = logging.getLogger(__name__)


def parse_status(value: CaseStatus | str) -> CaseStatus:
    if isinstance(value, CaseStatus):
        return value
    try:
        return CaseStatus.parse(value)
    except ValueError as exc:
        raise ValidationFailedError(f"Unknown status '{value}'", status=value) from exc


def allowed_transitions(
    kind: CaseKind | str, status: CaseStatus | str, include_override: bool = False
) -> list[str]:
    """Target statuses for UI hints (override close-outs only when asked)."""
    return [
        target.value
        for target in transitions.allowed_targets(kind, status, include_override=include_override)
    ]


def _apply_transition(
    case: Case,
    target: CaseStatus,
    *,
    resolution: str | None,
    reason: str | None,
    override: bool,
) -> None:
    """Move ``case`` one step to ``target`` or raise; mutates in place."""
    source = CaseStatus(case.status)
    if source is target:
        return
    if source is CaseStatus.CLOSED:
        raise CaseClosedError(f"Case {case.case_number} is closed", case_id=case.id)

    rule = transitions.find_rule(case.kind, source, target)
    if rule is None:
        raise InvalidTransitionError(
            f"Transition {source.value} -> {target.value} is not allowed for {case.kind}",
            case_id=case.id,
        )

    if rule.requires is Requirement.OVERRIDE:
        if not override:
            raise InvalidTransitionError(
                f"Closing a {source.value} case requires an administrative override",
                case_id=case.id,
            )
        if not (reason or "").strip():
            raise ValidationFailedError("A reason is required for an override close", case_id=case.id)
        if not (case.resolution or "").strip():
            case.resolution = reason.strip()
    elif rule.requires is Requirement.RESOLUTION and resolution is not None:
        case.resolution = resolution.strip()

    unmet = transitions.unmet_requirement(rule, case, override)
    if unmet is Requirement.RESOLUTION:
        raise ValidationFailedError(
            f"Resolution is required to enter '{target.value}'", case_id=case.id
        )
    if unmet is Requirement.ASSIGNED:
        raise InvalidTransitionError(
            f"Case must be assigned before '{target.value}'", case_id=case.id
        )
    if unmet is Requirement.CLASSIFIED:
        raise ValidationFailedError("Case must be classified before it is opened", case_id=case.id)

    case.status = target.value


def _notify_terminal(case: Case, status: CaseStatus) -> None:
    if status not in TERMINAL_STATUSES:
        return
    notify_safely(
        case.subject_user_id,
        {
            "type": "case_status_changed",
            "case_id": str(case.id),
            "case_number": case.case_number,
            "status": status.value,
        },
    )


def transition(
    db: Session,
    case_id: UUID,
    to_status: CaseStatus | str,
    *,
    actor_id: str,
    resolution: str | None = None,
    reason: str | None = None,
    override: bool = False,
) -> UpdateResult:
    """
    Move a case to ``to_status``.

    A transition to the current status is a no-op (no AuditEntry, no
    ``updated_at`` bump), which makes replays safe.

    Raises:
        CaseNotFoundError, CaseClosedError, InvalidTransitionError,
        ValidationFailedError, StoreTimeoutError
    """
    target = parse_status(to_status)
    details: dict[str, Any] = {"to": target.value}
    if reason:
        details["reason"] = reason
    if override:
        details["override"] = True

    def mutator(case: Case) -> None:
        details["from"] = case.status
        _apply_transition(case, target, resolution=resolution, reason=reason, override=override)

    result = case_store.update(
        db,
        case_id,
        mutator,
        actor_id=actor_id,
        action=AuditAction.STATUS_CHANGED,
        details=details,
        override=override,
    )
    if result.audit_entry is not None:
        _notify_terminal(result.case, target)
    return result


def soft_delete(db: Session, case_id: UUID, *, actor_id: str, reason: str) -> UpdateResult:
    """
    User-facing delete: close the case and tag it ``deletion``.

    Cases are never physically removed. Non-terminal cases are closed by
    administrative override with ``reason``; repeating the delete is a no-op.
    """
    if not (reason or "").strip():
        raise ValidationFailedError("A reason is required to delete a case")

    def mutator(case: Case) -> None:
        status = CaseStatus(case.status)
        if status is CaseStatus.CLOSED and DELETION_TAG in (case.tags or []):
            return
        _apply_transition(case, CaseStatus.CLOSED, resolution=None, reason=reason, override=True)
        case.tags = [*(case.tags or []), DELETION_TAG]

    result = case_store.update(
        db,
        case_id,
        mutator,
        actor_id=actor_id,
        action=AuditAction.DELETED,
        details={"reason": reason},
        override=True,
    )
    if result.audit_entry is not None:
        logger.info("Case %s soft-deleted", result.case.case_number)
        _notify_terminal(result.case, CaseStatus.CLOSED)
    return result
