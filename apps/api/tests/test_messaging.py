"""Tests for the per-case message thread."""

import pytest

from casetriage.db.enums import AuditAction, CaseStatus, MessageSender
from casetriage.services import assignment, audit_service, case_store, messaging, workflow
from casetriage.services.errors import (
    BlobNotFoundError,
    CaseClosedError,
    ValidationFailedError,
)


def test_user_message_appends_without_audit(db, make_ticket):
    case = make_ticket()
    updated_at = case.updated_at
    entries = len(audit_service.case_history(db, case.id))

    result = messaging.append_message(
        db, case.id, sender=MessageSender.USER, author_id="u1", content="Still broken"
    )

    assert result.audit_entry is None
    assert result.message.seq == 1
    assert result.case.message_count == 1
    assert result.case.updated_at > updated_at
    assert result.case.status == CaseStatus.OPEN.value
    assert len(audit_service.case_history(db, case.id)) == entries


def test_first_staff_response_claims_and_investigates(db, make_ticket, collaborators):
    case = make_ticket()
    result = messaging.append_message(
        db, case.id, sender="staff", author_id="op2", content="Looking into it"
    )

    assert result.case.status == CaseStatus.INVESTIGATING.value
    assert result.case.assigned_to == "op2"
    assert result.audit_entry.action == AuditAction.FIRST_RESPONSE.value
    assert ("u1", "case_message") in [(u, e["type"]) for u, e in collaborators.notifier.sent]


def test_staff_reply_on_investigating_case_is_not_audited(db, make_ticket):
    case = make_ticket()
    assignment.assign(db, case.id, "op1", actor_id="op1")
    result = messaging.append_message(db, case.id, sender="staff", author_id="op1", content="Update")
    assert result.audit_entry is None
    assert result.case.assigned_to == "op1"


def test_thread_is_ordered(db, make_ticket):
    case = make_ticket()
    for text in ("one", "two", "three"):
        messaging.append_message(db, case.id, sender="user", author_id="u1", content=text)

    thread = messaging.list_messages(db, case.id)
    assert [m.content for m in thread] == ["one", "two", "three"]
    assert [m.seq for m in thread] == [1, 2, 3]


def test_append_on_closed_case_fails(db, make_ticket):
    case = make_ticket()
    workflow.transition(db, case.id, "closed", actor_id="admin", reason="spam", override=True)

    with pytest.raises(CaseClosedError):
        messaging.append_message(db, case.id, sender="user", author_id="u1", content="hello?")
    assert messaging.list_messages(db, case.id) == []
    assert case_store.get(db, case.id).message_count == 0


def test_append_on_resolved_case_is_allowed(db, make_ticket):
    case = make_ticket()
    assignment.assign(db, case.id, "op1", actor_id="op1")
    workflow.transition(db, case.id, "resolved", actor_id="op1", resolution="fixed")

    result = messaging.append_message(db, case.id, sender="user", author_id="u1", content="thanks")
    assert result.case.message_count == 1
    assert result.case.status == CaseStatus.RESOLVED.value


def test_empty_content_fails(db, make_ticket):
    case = make_ticket()
    with pytest.raises(ValidationFailedError):
        messaging.append_message(db, case.id, sender="user", author_id="u1", content="   ")


def test_attachments_resolved_through_store(db, make_ticket, collaborators):
    case = make_ticket()
    blob_id = collaborators.attachments.put_blob(b"png", name="screen.png", content_type="image/png")

    result = messaging.append_message(
        db, case.id, sender="user", author_id="u1", content="see attached", attachments=[blob_id]
    )
    assert result.message.attachments[0]["name"] == "screen.png"

    with pytest.raises(BlobNotFoundError):
        messaging.append_message(
            db, case.id, sender="user", author_id="u1", content="again", attachments=["missing"]
        )
