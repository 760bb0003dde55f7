"""Pydantic schemas for the audit log."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class AuditEntryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    case_id: UUID
    actor_id: str
    action: str
    before_state: dict[str, Any] | None = None
    after_state: dict[str, Any]
    details: dict[str, Any] | None = None
    bulk_operation_id: UUID | None = None
    created_at: datetime
    prev_hash: str
    entry_hash: str | None = None


class AuditListResponse(BaseModel):
    items: list[AuditEntryRead]
    total: int
    page: int
    per_page: int


class ChangeFeedResponse(BaseModel):
    """Entries after the cursor; pass ``next_after`` back to continue."""
    items: list[AuditEntryRead]
    next_after: int


class ChainVerificationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    ok: bool
    checked: int
    broken_entry_ids: list[int]
