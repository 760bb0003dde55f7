"""Tests for the classification & priority engine - pure unit tests."""

import pytest

from casetriage.db.enums import CaseCategory, CaseKind, Severity
from casetriage.services.classification import RULES, Rule, classify
from casetriage.services.errors import ErrorKind, ValidationFailedError


# =============================================================================
# Rule matching
# =============================================================================

def test_rule_operators():
    rule = Rule(
        "t",
        CaseKind.DISPUTE,
        CaseCategory.PAYMENT,
        Severity.HIGH,
        {"dispute_type": "payment", "amount__gte": 100, "channel__in": ("a", "b")},
    )
    assert rule.matches({"dispute_type": "payment", "amount": "150", "channel": "a"})
    assert not rule.matches({"dispute_type": "payment", "amount": 50, "channel": "a"})
    assert not rule.matches({"dispute_type": "payment", "amount": None, "channel": "a"})
    assert not rule.matches({"dispute_type": "payment", "amount": 150, "channel": "c"})


def test_rules_have_unique_names():
    names = [rule.name for rule in RULES]
    assert len(names) == len(set(names))


# =============================================================================
# classify
# =============================================================================

def test_most_specific_rule_wins():
    """The payment rule with an amount threshold beats the plain payment rule."""
    small = classify(CaseKind.DISPUTE, {"dispute_type": "payment", "amount": "20"})
    large = classify(CaseKind.DISPUTE, {"dispute_type": "payment", "amount": "2500"})

    assert small.rule == "dispute.payment"
    assert small.severity is Severity.MEDIUM
    assert large.rule == "dispute.payment.large"
    assert large.severity is Severity.HIGH
    assert large.category is CaseCategory.PAYMENT


def test_no_rule_falls_back_to_general_low():
    result = classify(CaseKind.SUPPORT_TICKET, {"topic": "general"})
    assert result.rule == "fallback"
    assert result.category is CaseCategory.GENERAL
    assert result.severity is Severity.LOW


def test_declared_priority_raises_but_never_lowers():
    raised = classify(CaseKind.SUPPORT_TICKET, {"topic": "technical", "declared_priority": "urgent"})
    assert raised.severity is Severity.CRITICAL

    kept = classify(CaseKind.CLAIM, {"claim_type": "account_access", "declared_priority": "low"})
    assert kept.severity is Severity.HIGH


def test_explicit_category_overrides_rule_category():
    result = classify(CaseKind.SUPPORT_TICKET, {"topic": "technical", "category": "account"})
    assert result.category is CaseCategory.ACCOUNT
    assert result.severity is Severity.LOW


def test_unknown_category_is_validation_failure():
    with pytest.raises(ValidationFailedError) as exc_info:
        classify(CaseKind.SUPPORT_TICKET, {"topic": "technical", "category": "astrology"})
    assert exc_info.value.kind is ErrorKind.VALIDATION_FAILED


def test_classify_is_deterministic():
    payload = {"claim_type": "refund_request", "amount": 800}
    assert classify("claim", payload) == classify("claim", dict(payload))


# =============================================================================
# Anti-cheat severity
# =============================================================================

@pytest.mark.parametrize(
    "detector,expected",
    [
        ("bot_behavior", Severity.HIGH),
        ("impossible_moves", Severity.HIGH),
        ("multiple_accounts", Severity.HIGH),
        ("suspicious_timing", Severity.MEDIUM),
        ("pattern_detection", Severity.MEDIUM),
    ],
)
def test_detector_base_severity(detector, expected):
    result = classify(CaseKind.ANTI_CHEAT_FLAG, {"detector": detector, "signal_strength": 0.5})
    assert result.severity is expected


def test_strong_signal_bumps_one_level():
    result = classify(CaseKind.ANTI_CHEAT_FLAG, {"detector": "suspicious_timing", "signal_strength": 0.95})
    assert result.severity is Severity.HIGH


def test_signal_count_floor():
    result = classify(CaseKind.ANTI_CHEAT_FLAG, {"detector": "pattern_detection", "signal_count": 12})
    assert result.severity is Severity.CRITICAL


def test_strong_signal_caps_at_critical():
    result = classify(
        CaseKind.ANTI_CHEAT_FLAG,
        {"detector": "bot_behavior", "signal_count": 10, "signal_strength": 1.0},
    )
    assert result.severity is Severity.CRITICAL
