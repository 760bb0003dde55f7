"""Classification & priority engine.

``classify`` is a pure function from (kind, payload) to (category,
severity). Rules are data: each names the kind it applies to and a set of
conditions on payload fields. Among matching rules the one with the most
conditions wins; ties go to the higher severity. Declared priority and
anti-cheat signal strength can only raise the result.
"""

from dataclasses import dataclass, field
from typing import Any, Mapping

from casetriage.db.enums import (
    CaseCategory,
    CaseKind,
    DeclaredPriority,
    DetectorType,
    Severity,
)
from casetriage.services.errors import ValidationFailedError


@dataclass(frozen=True)
class Rule:
    """
    Declarative classification rule.

    Condition keys are ``field`` (equality), ``field__in`` (membership) or
    ``field__gte`` (numeric lower bound).
    """

    name: str
    kind: CaseKind
    category: CaseCategory
    severity: Severity
    when: Mapping[str, Any] = field(default_factory=dict)

    @property
    def specificity(self) -> int:
        return len(self.when)

    def matches(self, payload: Mapping[str, Any]) -> bool:
        for key, expected in self.when.items():
            name, _, op = key.partition("__")
            value = payload.get(name)
            if hasattr(value, "value"):
                value = value.value
            if op == "in":
                if value not in expected:
                    return False
            elif op == "gte":
                if value is None or float(value) < float(expected):
                    return False
            elif value != expected:
                return False
        return True


@dataclass(frozen=True)
class Classification:
    category: CaseCategory
    severity: Severity
    rule: str


C, S, K = CaseCategory, Severity, CaseKind

RULES: tuple[Rule, ...] = (
    # Disputes
    Rule("dispute.payment", K.DISPUTE, C.PAYMENT, S.MEDIUM, {"dispute_type": "payment"}),
    Rule("dispute.payment.large", K.DISPUTE, C.PAYMENT, S.HIGH,
         {"dispute_type": "payment", "amount__gte": 1000}),
    Rule("dispute.game_result", K.DISPUTE, C.GAME_RESULT, S.MEDIUM, {"dispute_type": "game_result"}),
    Rule("dispute.technical", K.DISPUTE, C.TECHNICAL, S.LOW, {"dispute_type": "technical"}),
    Rule("dispute.fraud", K.DISPUTE, C.FRAUD, S.HIGH, {"dispute_type": "fraud"}),
    # Support tickets
    Rule("ticket.gaming", K.SUPPORT_TICKET, C.GAME_RESULT, S.LOW, {"topic": "gaming"}),
    Rule("ticket.wallet", K.SUPPORT_TICKET, C.PAYMENT, S.MEDIUM, {"topic": "wallet"}),
    Rule("ticket.technical", K.SUPPORT_TICKET, C.TECHNICAL, S.LOW, {"topic": "technical"}),
    Rule("ticket.account", K.SUPPORT_TICKET, C.ACCOUNT, S.MEDIUM, {"topic": "account"}),
    Rule("ticket.live_chat.wallet", K.SUPPORT_TICKET, C.PAYMENT, S.HIGH,
         {"topic": "wallet", "channel": "live_chat"}),
    # Claims
    Rule("claim.payment_dispute", K.CLAIM, C.PAYMENT, S.MEDIUM, {"claim_type": "payment_dispute"}),
    Rule("claim.refund", K.CLAIM, C.PAYMENT, S.LOW, {"claim_type": "refund_request"}),
    Rule("claim.refund.large", K.CLAIM, C.PAYMENT, S.MEDIUM,
         {"claim_type": "refund_request", "amount__gte": 500}),
    Rule("claim.game_issue", K.CLAIM, C.GAME_RESULT, S.LOW, {"claim_type": "game_issue"}),
    Rule("claim.account_access", K.CLAIM, C.ACCOUNT, S.HIGH, {"claim_type": "account_access"}),
    Rule("claim.technical", K.CLAIM, C.TECHNICAL, S.LOW, {"claim_type": "technical_support"}),
    Rule("claim.fraud", K.CLAIM, C.FRAUD, S.HIGH, {"claim_type": "fraud_report"}),
    # Anti-cheat detectors
    Rule("flag.detector.fraud", K.ANTI_CHEAT_FLAG, C.FRAUD, S.MEDIUM,
         {"detector__in": ("suspicious_timing", "impossible_moves", "pattern_detection", "bot_behavior")}),
    Rule("flag.detector.accounts", K.ANTI_CHEAT_FLAG, C.ACCOUNT, S.HIGH,
         {"detector": "multiple_accounts"}),
)

# Fixed detector → base severity for anti-cheat flags
DETECTOR_SEVERITY: dict[DetectorType, Severity] = {
    DetectorType.BOT_BEHAVIOR: Severity.HIGH,
    DetectorType.IMPOSSIBLE_MOVES: Severity.HIGH,
    DetectorType.MULTIPLE_ACCOUNTS: Severity.HIGH,
    DetectorType.SUSPICIOUS_TIMING: Severity.MEDIUM,
    DetectorType.PATTERN_DETECTION: Severity.MEDIUM,
}
_DETECTOR_SEVERITY_BY_VALUE = {detector.value: sev for detector, sev in DETECTOR_SEVERITY.items()}

# Accumulated detector hits → minimum severity (upward only)
SIGNAL_COUNT_FLOORS: tuple[tuple[int, Severity], ...] = (
    (10, Severity.CRITICAL),
    (5, Severity.HIGH),
    (3, Severity.MEDIUM),
)
STRONG_SIGNAL = 0.9

FALLBACK = Classification(CaseCategory.GENERAL, Severity.LOW, "fallback")


def _parse_category(value: Any) -> CaseCategory:
    try:
        return CaseCategory(value.value if hasattr(value, "value") else value)
    except ValueError as exc:
        raise ValidationFailedError(f"Unknown category '{value}'", category=value) from exc


def _anti_cheat_severity(payload: Mapping[str, Any], base: Severity) -> Severity:
    severity = base
    detector = payload.get("detector")
    if detector:
        detector_severity = _DETECTOR_SEVERITY_BY_VALUE.get(getattr(detector, "value", detector))
        if detector_severity:
            severity = Severity.highest(severity, detector_severity)

    count = int(payload.get("signal_count") or 1)
    for threshold, floor in SIGNAL_COUNT_FLOORS:
        if count >= threshold:
            severity = Severity.highest(severity, floor)
            break

    strength = payload.get("signal_strength")
    if strength is not None and float(strength) >= STRONG_SIGNAL:
        severity = severity.bump()
    return severity


def classify(kind: CaseKind | str, payload: Mapping[str, Any]) -> Classification:
    """Assign category and severity from declarative rules."""
    kind = CaseKind(kind)
    matching = [rule for rule in RULES if rule.kind is kind and rule.matches(payload)]
    if matching:
        best = max(matching, key=lambda rule: (rule.specificity, rule.severity.rank))
        result = Classification(best.category, best.severity, best.name)
    else:
        result = FALLBACK

    category = result.category
    explicit = payload.get("category")
    if explicit:
        category = _parse_category(explicit)

    severity = result.severity
    if kind is CaseKind.ANTI_CHEAT_FLAG:
        severity = _anti_cheat_severity(payload, severity)

    declared = payload.get("declared_priority")
    if declared:
        try:
            declared_severity = DeclaredPriority(getattr(declared, "value", declared)).as_severity()
        except ValueError as exc:
            raise ValidationFailedError(f"Unknown priority '{declared}'") from exc
        severity = Severity.highest(severity, declared_severity)

    return Classification(category=category, severity=severity, rule=result.rule)
