"""Tests for the anti-cheat clustering rule."""

from datetime import timedelta

from sqlalchemy import select

from casetriage.core.config import settings
from casetriage.core.constants import CLUSTER_TAG
from casetriage.db.enums import CaseStatus, Severity
from casetriage.db.models import Case
from casetriage.services import clustering, workflow


def _synthetic_cases(db, user_id="u1"):
    return db.execute(
        select(Case).where(Case.subject_user_id == user_id).where(Case.is_synthetic.is_(True))
    ).scalars().all()


def test_below_threshold_no_escalation(db, make_flag):
    for _ in range(settings.CLUSTER_FLAG_THRESHOLD - 1):
        result = make_flag()
    assert result.cluster is not None
    assert not result.cluster.escalated
    assert _synthetic_cases(db) == []


def test_threshold_raises_one_critical_synthetic_case(db, make_flag):
    results = [make_flag() for _ in range(settings.CLUSTER_FLAG_THRESHOLD)]
    decision = results[-1].cluster

    assert decision.escalated
    assert decision.created
    synthetic = decision.synthetic_case
    assert synthetic.is_synthetic
    assert synthetic.severity == Severity.CRITICAL.value
    assert synthetic.category == "fraud"
    assert CLUSTER_TAG in synthetic.tags
    assert synthetic.status == CaseStatus.OPEN.value
    assert sorted(synthetic.fields["cluster_flag_ids"]) == sorted(str(r.case.id) for r in results)

    # Member flags keep their own severity
    for r in results:
        assert r.case.severity == Severity.MEDIUM.value


def test_next_flag_in_window_creates_no_second_case(db, make_flag):
    members = [make_flag() for _ in range(settings.CLUSTER_FLAG_THRESHOLD)]
    extra = make_flag()

    assert extra.cluster.escalated
    assert not extra.cluster.created
    synthetic = _synthetic_cases(db)
    assert len(synthetic) == 1
    assert synthetic[0].id == members[-1].cluster.synthetic_case.id
    assert str(extra.case.id) in synthetic[0].fields["cluster_flag_ids"]


def test_reevaluation_is_idempotent(db, make_flag):
    for _ in range(settings.CLUSTER_FLAG_THRESHOLD):
        make_flag()
    first = clustering.evaluate_cluster(db, "u1")
    second = clustering.evaluate_cluster(db, "u1")

    assert not first.created and not second.created
    assert first.synthetic_case.id == second.synthetic_case.id
    assert len(_synthetic_cases(db)) == 1


def test_resolved_flags_do_not_count(db, make_flag):
    resolved = make_flag().case
    workflow.transition(db, resolved.id, "false_positive", actor_id="op1", resolution="lag spike")
    make_flag()
    decision = make_flag().cluster

    assert not decision.escalated
    assert len(decision.member_ids) == 2


def test_flags_outside_window_do_not_count(db, make_flag):
    old = make_flag().case
    # Push the first flag outside the window
    old.created_at = old.created_at - timedelta(hours=settings.CLUSTER_WINDOW_HOURS + 1)
    db.commit()
    make_flag()
    decision = make_flag().cluster

    assert not decision.escalated
    assert old.id not in decision.member_ids


def test_clusters_are_per_user(db, make_flag):
    for user in ("u1", "u2", "u3"):
        make_flag(subject_user_id=user)
    assert _synthetic_cases(db, "u1") == []
