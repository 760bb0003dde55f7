"""SQLAlchemy ORM models for cases, messages, and the audit log."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON, BigInteger, Boolean, ForeignKey, Index, Integer, String, Text, Uuid
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from casetriage.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# SQLite only auto-increments INTEGER PRIMARY KEY columns.
SequenceId = BigInteger().with_variant(Integer(), "sqlite")


class Case(Base):
    """
    A dispute, support ticket, claim, or anti-cheat flag.

    One table for every kind; `kind` discriminates and never changes.
    Kind-specific payload lives in `fields`. Rows are never deleted:
    deletion is a close-out with the `deletion` tag.
    """
    __tablename__ = "cases"
    __table_args__ = (
        Index("idx_cases_queue", "assigned_to", "severity_rank", "created_at"),
        Index("idx_cases_status", "status"),
        Index("idx_cases_kind_status", "kind", "status"),
        Index("idx_cases_subject", "subject_user_id", "kind", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    case_number: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    kind: Mapped[str] = mapped_column(String(30), nullable=False)
    subject_user_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Triage
    category: Mapped[str | None] = mapped_column(String(30), nullable=True)
    severity: Mapped[str | None] = mapped_column(String(20), nullable=True)
    severity_rank: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False)

    # Assignment
    assigned_to: Mapped[str | None] = mapped_column(String(100), nullable=True)
    assigned_at: Mapped[datetime | None] = mapped_column(nullable=True)

    resolution: Mapped[str | None] = mapped_column(Text, nullable=True)
    evidence: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    tags: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    fields: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    is_synthetic: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    message_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    closed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=_utcnow, nullable=False)

    # Optimistic concurrency for writers outside this process
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    messages: Mapped[list["CaseMessage"]] = relationship(
        back_populates="case",
        order_by="CaseMessage.seq",
    )


class CaseMessage(Base):
    """Append-only conversation entry between the reporting user and staff."""
    __tablename__ = "case_messages"
    __table_args__ = (
        Index("idx_case_messages_case_seq", "case_id", "seq", unique=True),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    case_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("cases.id", ondelete="RESTRICT"), nullable=False
    )
    seq: Mapped[int] = mapped_column(Integer, nullable=False)  # Per-case order
    sender: Mapped[str] = mapped_column(String(10), nullable=False)  # MessageSender
    author_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    attachments: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=_utcnow, nullable=False)

    case: Mapped["Case"] = relationship(back_populates="messages")


class AuditEntry(Base):
    """
    Immutable record of one case mutation.

    The integer id doubles as the change-feed cursor. Entries are chained
    by SHA-256 (prev_hash -> entry_hash) so edits are detectable.
    """
    __tablename__ = "audit_entries"
    __table_args__ = (
        Index("idx_audit_case_id", "case_id", "id"),
        Index("idx_audit_actor_created", "actor_id", "created_at"),
        Index("idx_audit_action_created", "action", "created_at"),
    )

    id: Mapped[int] = mapped_column(SequenceId, primary_key=True, autoincrement=True)
    case_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("cases.id", ondelete="RESTRICT"), nullable=False
    )
    actor_id: Mapped[str] = mapped_column(String(100), nullable=False)
    action: Mapped[str] = mapped_column(String(40), nullable=False)  # AuditAction
    before_state: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    after_state: Mapped[dict] = mapped_column(JSON, nullable=False)
    details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    bulk_operation_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=_utcnow, nullable=False)

    # Hash chain
    prev_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    entry_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)


class CaseCounter(Base):
    """Per-kind sequence for human-readable case numbers."""
    __tablename__ = "case_counters"

    kind: Mapped[str] = mapped_column(String(30), primary_key=True)
    current_value: Mapped[int] = mapped_column(Integer, nullable=False)
