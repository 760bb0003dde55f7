"""Tests for assignment, bulk assignment and the operator queue."""

import uuid

import pytest

from casetriage.db.enums import AuditAction, CaseStatus
from casetriage.services import assignment, audit_service, case_store, workflow
from casetriage.services.errors import (
    AlreadyAssignedError,
    CaseClosedError,
    ErrorKind,
    OperatorNotFoundError,
    ValidationFailedError,
)


# =============================================================================
# assign
# =============================================================================

def test_assign_moves_open_case_to_investigating(db, make_ticket, collaborators):
    case = make_ticket()
    result = assignment.assign(db, case.id, "op1", actor_id="op1")

    assert result.case.assigned_to == "op1"
    assert result.case.assigned_at is not None
    assert result.case.status == CaseStatus.INVESTIGATING.value
    assert result.audit_entry.action == AuditAction.ASSIGNED.value
    assert ("op1", "case_assigned") in [(u, e["type"]) for u, e in collaborators.notifier.sent]


def test_assign_new_case_chains_through_open(db, make_ticket):
    case = make_ticket(auto_open=False)
    result = assignment.assign(db, case.id, "op1", actor_id="op1")

    assert result.case.status == CaseStatus.INVESTIGATING.value
    assert result.audit_entry.before_state["status"] == "new"
    assert len(audit_service.case_history(db, case.id)) == 2


def test_assign_unknown_operator(db, make_ticket):
    case = make_ticket()
    with pytest.raises(OperatorNotFoundError) as exc_info:
        assignment.assign(db, case.id, "ghost", actor_id="op1")
    assert exc_info.value.kind is ErrorKind.NOT_FOUND


def test_assign_same_operator_is_noop(db, make_ticket):
    case = make_ticket()
    assignment.assign(db, case.id, "op1", actor_id="op1")
    again = assignment.assign(db, case.id, "op1", actor_id="op1")
    assert again.audit_entry is None


def test_already_assigned_without_reassign(db, make_ticket):
    case = make_ticket()
    assignment.assign(db, case.id, "op1", actor_id="op1")
    with pytest.raises(AlreadyAssignedError):
        assignment.assign(db, case.id, "op2", actor_id="op2")
    assert case_store.get(db, case.id).assigned_to == "op1"


def test_reassign(db, make_ticket):
    case = make_ticket()
    assignment.assign(db, case.id, "op1", actor_id="op1")
    result = assignment.assign(db, case.id, "op2", actor_id="admin", reassign=True)

    assert result.case.assigned_to == "op2"
    assert result.audit_entry.action == AuditAction.REASSIGNED.value
    assert result.audit_entry.details["previous_assignee"] == "op1"


def test_assign_terminal_case_fails(db, make_ticket):
    case = make_ticket()
    workflow.transition(db, case.id, "rejected", actor_id="op1", resolution="not a bug")
    with pytest.raises(CaseClosedError):
        assignment.assign(db, case.id, "op1", actor_id="op1")


# =============================================================================
# bulk_assign
# =============================================================================

def test_bulk_assign_partial_failure(db, make_ticket):
    """c2 is held by op1: c1/c3 succeed, c2 reports AlreadyAssigned and is untouched."""
    c1, c2, c3 = make_ticket(), make_ticket(), make_ticket()
    assignment.assign(db, c2.id, "op1", actor_id="op1")
    c2_entries = len(audit_service.case_history(db, c2.id))

    bulk_id, results = assignment.bulk_assign(db, [c1.id, c2.id, c3.id], "op2", actor_id="admin")

    by_id = {item.case_id: item for item in results}
    assert [item.case_id for item in results] == [c1.id, c2.id, c3.id]
    assert by_id[c1.id].ok and by_id[c3.id].ok
    assert not by_id[c2.id].ok
    assert by_id[c2.id].error == ErrorKind.ALREADY_ASSIGNED.value

    assert case_store.get(db, c2.id).assigned_to == "op1"
    assert len(audit_service.case_history(db, c2.id)) == c2_entries

    for case_id in (c1.id, c3.id):
        entry = audit_service.case_history(db, case_id)[-1]
        assert entry.bulk_operation_id == bulk_id
        assert entry.id == by_id[case_id].audit_entry_id


def test_bulk_assign_unknown_case_reports_not_found(db, make_ticket):
    case = make_ticket()
    missing = uuid.uuid4()
    _, results = assignment.bulk_assign(db, [missing, case.id], "op2", actor_id="admin")

    assert results[0].error == ErrorKind.NOT_FOUND.value
    assert results[1].ok


def test_bulk_assign_reports_duplicate_ids(db, make_ticket):
    case = make_ticket()
    _, results = assignment.bulk_assign(db, [case.id, case.id], "op2", actor_id="admin")

    assert [item.case_id for item in results] == [case.id, case.id]
    assert results[0].ok
    assert results[1].error == ErrorKind.VALIDATION_FAILED.value
    assert [e.action for e in audit_service.case_history(db, case.id)].count(AuditAction.ASSIGNED.value) == 1


def test_queue_rejects_unknown_kind(db):
    with pytest.raises(ValidationFailedError):
        assignment.list_queue(db, kind="complaint")


# =============================================================================
# Queue & workload
# =============================================================================

def test_queue_orders_by_severity_then_age(db, make_ticket):
    low = make_ticket(topic="technical")
    high = make_ticket(topic="wallet", channel="live_chat")
    medium = make_ticket(topic="account")
    assigned = make_ticket(topic="wallet", declared_priority="urgent")
    assignment.assign(db, assigned.id, "op1", actor_id="op1")

    items, total = assignment.list_queue(db)

    assert total == 3
    assert [case.id for case in items] == [high.id, medium.id, low.id]


def test_operator_workload(db, make_ticket):
    for _ in range(2):
        assignment.assign(db, make_ticket().id, "op1", actor_id="op1")
    assignment.assign(db, make_ticket().id, "op2", actor_id="op2")

    workload = assignment.operator_workload(db)

    assert workload[0] == {"operator_id": "op1", "open_cases": 2, "by_status": {"investigating": 2}}
    assert workload[1]["operator_id"] == "op2"
