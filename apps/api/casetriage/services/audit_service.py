"""Audit log service - the single write path for case audit entries.

Every case mutation funnels through ``record``, which the case store calls
inside the mutation transaction. If the append fails the whole mutation is
rolled back, so case state and audit trail never diverge.

Entries are hash-chained per case: each entry stores the previous entry's
hash for the same case, so per-case writes (already serialized by the case
lock) always extend a single chain.
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from casetriage.db.enums import AuditAction
from casetriage.db.models import AuditEntry, Case

GENESIS_HASH = "0" * 64  # prev_hash of the first entry in every case chain


@dataclass(frozen=True)
class AuditFilters:
    case_id: UUID | None = None
    actor_id: str | None = None
    action: str | None = None
    bulk_operation_id: UUID | None = None
    since: datetime | None = None
    until: datetime | None = None


@dataclass
class ChainVerification:
    ok: bool
    checked: int
    broken_entry_ids: list[int] = field(default_factory=list)


def canonical_json(obj: dict | None) -> str:
    """
    Serialize object to canonical JSON for consistent hashing.

    Uses sorted keys, compact separators, and str() for non-JSON types.
    This MUST be used consistently everywhere hashes are computed.
    """
    return json.dumps(obj or {}, sort_keys=True, separators=(",", ":"), default=str)


def _ts(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def compute_entry_hash(
    prev_hash: str,
    entry_id: str,
    case_id: str,
    actor_id: str,
    action: str,
    created_at: str,
    before_json: str,
    after_json: str,
    details_json: str,
    bulk_operation_id: str = "",
) -> str:
    """
    Compute hash for an audit entry.

    Hash = SHA256(all immutable fields joined with |)
    """
    data = "|".join([
        prev_hash,
        entry_id,
        case_id,
        actor_id,
        action,
        created_at,
        before_json,
        after_json,
        details_json,
        bulk_operation_id,
    ])
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def _hash_for(entry: AuditEntry) -> str:
    return compute_entry_hash(
        prev_hash=entry.prev_hash,
        entry_id=str(entry.id),
        case_id=str(entry.case_id),
        actor_id=entry.actor_id,
        action=entry.action,
        created_at=_ts(entry.created_at),
        before_json=canonical_json(entry.before_state),
        after_json=canonical_json(entry.after_state),
        details_json=canonical_json(entry.details),
        bulk_operation_id=str(entry.bulk_operation_id) if entry.bulk_operation_id else "",
    )


def get_last_hash(db: Session, case_id: UUID) -> str:
    """Hash of the newest entry in a case chain (genesis if none)."""
    result = db.execute(
        select(AuditEntry.entry_hash)
        .where(AuditEntry.case_id == case_id)
        .where(AuditEntry.entry_hash.isnot(None))
        .order_by(AuditEntry.id.desc())
        .limit(1)
    ).scalar()
    return result or GENESIS_HASH


def case_snapshot(case: Case) -> dict[str, Any]:
    """JSON-safe view of the audited fields of a case."""
    return {
        "kind": case.kind,
        "status": case.status,
        "category": case.category,
        "severity": case.severity,
        "assigned_to": case.assigned_to,
        "resolution": case.resolution,
        "tags": list(case.tags or []),
        "evidence": [item.get("blob_id") for item in case.evidence or []],
        "fields": dict(case.fields or {}),
        "subject_user_id": case.subject_user_id,
    }


def record(
    db: Session,
    *,
    case: Case,
    actor_id: str,
    action: AuditAction,
    before: dict[str, Any] | None,
    after: dict[str, Any],
    details: dict[str, Any] | None = None,
    bulk_operation_id: UUID | None = None,
) -> AuditEntry:
    """
    Append an audit entry for a case mutation and extend the hash chain.

    Must run inside the caller's transaction; it only flushes.
    """
    prev_hash = get_last_hash(db, case.id)
    entry = AuditEntry(
        case_id=case.id,
        actor_id=actor_id,
        action=action.value,
        before_state=before,
        after_state=after,
        details=details,
        bulk_operation_id=bulk_operation_id,
        created_at=case.updated_at,
        prev_hash=prev_hash,
    )
    db.add(entry)
    db.flush()  # Assign sequence id

    entry.entry_hash = _hash_for(entry)
    db.flush()
    return entry


# =============================================================================
# Read side
# =============================================================================

def apply_filters(query, filters: AuditFilters):
    if filters.case_id:
        query = query.where(AuditEntry.case_id == filters.case_id)
    if filters.actor_id:
        query = query.where(AuditEntry.actor_id == filters.actor_id)
    if filters.action:
        query = query.where(AuditEntry.action == filters.action)
    if filters.bulk_operation_id:
        query = query.where(AuditEntry.bulk_operation_id == filters.bulk_operation_id)
    if filters.since:
        query = query.where(AuditEntry.created_at >= filters.since)
    if filters.until:
        query = query.where(AuditEntry.created_at <= filters.until)
    return query


def list_entries(
    db: Session,
    filters: AuditFilters,
    page: int = 1,
    per_page: int = 50,
) -> tuple[list[AuditEntry], int]:
    """Newest-first page of audit entries plus the total match count."""
    base = apply_filters(select(AuditEntry), filters)
    total = db.execute(select(func.count()).select_from(base.subquery())).scalar_one()
    offset = (page - 1) * per_page
    items = db.execute(
        base.order_by(AuditEntry.id.desc()).offset(offset).limit(per_page)
    ).scalars().all()
    return list(items), total


def case_history(db: Session, case_id: UUID) -> list[AuditEntry]:
    """Oldest-first audit trail of one case."""
    return list(
        db.execute(
            select(AuditEntry).where(AuditEntry.case_id == case_id).order_by(AuditEntry.id)
        ).scalars().all()
    )


def changes_since(db: Session, after_id: int = 0, limit: int = 100) -> list[AuditEntry]:
    """Change feed: entries with id greater than the cursor, oldest first."""
    return list(
        db.execute(
            select(AuditEntry)
            .where(AuditEntry.id > after_id)
            .order_by(AuditEntry.id)
            .limit(limit)
        ).scalars().all()
    )


def verify_chain(db: Session, case_id: UUID | None = None) -> ChainVerification:
    """Recompute every hash and check each entry links to its predecessor."""
    query = select(AuditEntry).order_by(AuditEntry.id)
    if case_id:
        query = query.where(AuditEntry.case_id == case_id)

    last_hash: dict[UUID, str] = {}
    broken: list[int] = []
    checked = 0
    for entry in db.execute(query.execution_options(yield_per=500)).scalars():
        checked += 1
        expected_prev = last_hash.get(entry.case_id, GENESIS_HASH)
        if entry.prev_hash != expected_prev or entry.entry_hash != _hash_for(entry):
            broken.append(entry.id)
        last_hash[entry.case_id] = entry.entry_hash or ""
    return ChainVerification(ok=not broken, checked=checked, broken_entry_ids=broken)
