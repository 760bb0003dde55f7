"""Messaging thread - append-only conversation per case."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from casetriage.db.enums import AuditAction, CaseStatus, MessageSender
from casetriage.db.models import AuditEntry, Case, CaseMessage
from casetriage.services import case_store
from casetriage.services.assignment import require_operator
from casetriage.services.collaborators import notify_safely, resolve_blobs
from casetriage.services.errors import CaseClosedError, ValidationFailedError

MAX_MESSAGE_LENGTH = 10_000


@dataclass
class AppendResult:
    message: CaseMessage
    case: Case
    audit_entry: AuditEntry | None = None

    @property
    def audit_entry_id(self) -> int | None:
        return self.audit_entry.id if self.audit_entry else None


def _parse_sender(sender: MessageSender | str) -> MessageSender:
    try:
        return MessageSender(sender)
    except ValueError as exc:
        raise ValidationFailedError(f"Unknown sender '{sender}'", sender=sender) from exc


def append_message(
    db: Session,
    case_id: UUID,
    *,
    sender: MessageSender | str,
    author_id: str | None,
    content: str,
    attachments: Iterable[str] = (),
) -> AppendResult:
    """
    Append one message and advance the case's ``updated_at``.

    A staff reply on a ``new``/``open`` case is the first response: the case
    moves to ``investigating`` (claimed by the sender when unassigned) and
    that change is audited. Plain appends write no AuditEntry.

    Raises:
        CaseNotFoundError, CaseClosedError, ValidationFailedError,
        BlobNotFoundError, OperatorNotFoundError, StoreTimeoutError
    """
    sender = _parse_sender(sender)
    content = (content or "").strip()
    if not content:
        raise ValidationFailedError("Message content is required")
    if len(content) > MAX_MESSAGE_LENGTH:
        raise ValidationFailedError(f"Message exceeds {MAX_MESSAGE_LENGTH} characters")
    if sender is MessageSender.STAFF:
        if not author_id:
            raise ValidationFailedError("Staff messages need an author")
        require_operator(author_id)
    attachment_refs = resolve_blobs(attachments)

    appended: list[CaseMessage] = []

    def mutator(case: Case) -> None:
        status = CaseStatus(case.status)
        if status is CaseStatus.CLOSED:
            raise CaseClosedError(f"Case {case.case_number} is closed", case_id=case.id)

        appended.clear()
        case.message_count = (case.message_count or 0) + 1
        message = CaseMessage(
            case_id=case.id,
            seq=case.message_count,
            sender=sender.value,
            author_id=author_id,
            content=content,
            attachments=list(attachment_refs),
            created_at=datetime.now(timezone.utc),
        )
        db.add(message)
        appended.append(message)

        if sender is MessageSender.STAFF and status in (CaseStatus.NEW, CaseStatus.OPEN):
            if not case.assigned_to:
                case.assigned_to = author_id
                case.assigned_at = datetime.now(timezone.utc)
            case.status = CaseStatus.INVESTIGATING.value

    result = case_store.update(
        db,
        case_id,
        mutator,
        actor_id=author_id or sender.value,
        action=AuditAction.FIRST_RESPONSE,
        details={"sender": sender.value},
    )
    message = appended[0]
    case = result.case

    if sender is MessageSender.STAFF:
        recipient = case.subject_user_id
    else:
        recipient = case.assigned_to
    notify_safely(
        recipient,
        {
            "type": "case_message",
            "case_id": str(case.id),
            "case_number": case.case_number,
            "sender": sender.value,
        },
    )
    return AppendResult(message=message, case=case, audit_entry=result.audit_entry)


def list_messages(db: Session, case_id: UUID) -> list[CaseMessage]:
    """Thread in append order."""
    case_store.get(db, case_id)
    return list(
        db.execute(
            select(CaseMessage).where(CaseMessage.case_id == case_id).order_by(CaseMessage.seq)
        ).scalars().all()
    )
