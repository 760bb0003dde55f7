"""Legal status transitions per case kind."""

from dataclasses import dataclass
from enum import Enum
from typing import Any

from casetriage.db.enums import TERMINAL_STATUSES, CaseKind, CaseStatus

ALL_KINDS = frozenset(CaseKind)
USER_SUBMITTED_KINDS = frozenset(
    {CaseKind.DISPUTE, CaseKind.SUPPORT_TICKET, CaseKind.CLAIM}
)


class Requirement(str, Enum):
    """Precondition a case must meet for a transition."""

    NONE = "none"
    CLASSIFIED = "classified"
    ASSIGNED = "assigned"
    RESOLUTION = "resolution"
    OVERRIDE = "override"


@dataclass(frozen=True)
class TransitionRule:
    source: CaseStatus
    target: CaseStatus
    requires: Requirement = Requirement.NONE
    kinds: frozenset[CaseKind] = ALL_KINDS


S, R = CaseStatus, Requirement

TRANSITION_RULES: tuple[TransitionRule, ...] = (
    TransitionRule(S.NEW, S.OPEN, R.CLASSIFIED),
    TransitionRule(S.OPEN, S.INVESTIGATING, R.ASSIGNED),
    TransitionRule(S.INVESTIGATING, S.RESOLVED, R.RESOLUTION),
    # Side branch
    TransitionRule(S.OPEN, S.REJECTED, R.RESOLUTION, USER_SUBMITTED_KINDS),
    TransitionRule(S.INVESTIGATING, S.REJECTED, R.RESOLUTION, USER_SUBMITTED_KINDS),
    TransitionRule(S.OPEN, S.FALSE_POSITIVE, R.RESOLUTION, frozenset({CaseKind.ANTI_CHEAT_FLAG})),
    TransitionRule(S.INVESTIGATING, S.FALSE_POSITIVE, R.RESOLUTION, frozenset({CaseKind.ANTI_CHEAT_FLAG})),
    # Close-out
    TransitionRule(S.RESOLVED, S.CLOSED),
    TransitionRule(S.REJECTED, S.CLOSED),
    TransitionRule(S.FALSE_POSITIVE, S.CLOSED),
    # Administrative override
    TransitionRule(S.NEW, S.CLOSED, R.OVERRIDE),
    TransitionRule(S.OPEN, S.CLOSED, R.OVERRIDE),
    TransitionRule(S.INVESTIGATING, S.CLOSED, R.OVERRIDE),
)


def find_rule(kind: CaseKind | str, source: CaseStatus | str, target: CaseStatus | str) -> TransitionRule | None:
    kind, source, target = CaseKind(kind), CaseStatus(source), CaseStatus(target)
    for rule in TRANSITION_RULES:
        if rule.source is source and rule.target is target and kind in rule.kinds:
            return rule
    return None


def allowed_targets(kind: CaseKind | str, source: CaseStatus | str, include_override: bool = False) -> list[CaseStatus]:
    """Statuses reachable in one step, in table order."""
    kind, source = CaseKind(kind), CaseStatus(source)
    return [
        rule.target
        for rule in TRANSITION_RULES
        if rule.source is source
        and kind in rule.kinds
        and (include_override or rule.requires is not Requirement.OVERRIDE)
    ]


def unmet_requirement(rule: TransitionRule, case: Any, override: bool = False) -> Requirement | None:
    """
    Return the requirement ``case`` fails for ``rule``, or None.

    ``case`` is anything with category/severity/assigned_to/resolution
    attributes, evaluated as it would look after the transition.
    """
    if rule.requires is Requirement.CLASSIFIED:
        if not (case.category and case.severity):
            return rule.requires
    elif rule.requires is Requirement.ASSIGNED:
        if not case.assigned_to:
            return rule.requires
    elif rule.requires is Requirement.RESOLUTION:
        if not (case.resolution or "").strip():
            return rule.requires
    elif rule.requires is Requirement.OVERRIDE:
        if not override or not (case.resolution or "").strip():
            return rule.requires
    return None


def is_reachable(
    kind: CaseKind | str,
    source: CaseStatus | str,
    target: CaseStatus | str,
    case: Any,
    override: bool = False,
) -> bool:
    """
    True when ``target`` is reachable from ``source`` through legal steps
    whose requirements all hold for ``case``.

    Side effects such as assignment may chain ``new -> open ->
    investigating`` inside one mutation. Chains never pass through a
    terminal state, and overrides only apply as a single direct step.
    """
    kind, source, target = CaseKind(kind), CaseStatus(source), CaseStatus(target)
    if source is target:
        return True

    direct = find_rule(kind, source, target)
    if direct and unmet_requirement(direct, case, override) is None:
        return True

    frontier = [source]
    seen = {source}
    while frontier:
        current = frontier.pop()
        for rule in TRANSITION_RULES:
            if rule.source is not current or kind not in rule.kinds:
                continue
            if rule.requires is Requirement.OVERRIDE or rule.target in seen:
                continue
            if unmet_requirement(rule, case) is not None:
                continue
            if rule.target is target:
                return True
            seen.add(rule.target)
            if rule.target not in TERMINAL_STATUSES:
                frontier.append(rule.target)
    return False
