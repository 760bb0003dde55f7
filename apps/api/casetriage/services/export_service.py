"""Streaming export of audit entries, cases and messages.

Exports are read-only generators. Rows are fetched in keyset pages of
``EXPORT_PAGE_SIZE`` so the full history is never held in memory, and no
case lock is taken. Every row carries a ``cursor``; passing the last one
back as ``after`` resumes an interrupted export.
"""

from __future__ import annotations

import base64
import csv
import io
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterator, Sequence
from uuid import UUID

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from casetriage.core.config import settings
from casetriage.db.models import AuditEntry, Case, CaseMessage
from casetriage.services import audit_service, case_store
from casetriage.services.errors import ValidationFailedError

EXPORT_ENTITIES = ("audit", "cases", "messages")
EXPORT_FORMATS = ("csv", "json")

CSV_DANGEROUS_PREFIXES = ("=", "+", "-", "@")

AUDIT_COLUMNS = [
    "id",
    "case_id",
    "actor_id",
    "action",
    "before_state",
    "after_state",
    "details",
    "bulk_operation_id",
    "created_at",
    "prev_hash",
    "entry_hash",
]

CASE_COLUMNS = [
    "id",
    "case_number",
    "kind",
    "subject_user_id",
    "category",
    "severity",
    "status",
    "assigned_to",
    "assigned_at",
    "resolution",
    "tags",
    "evidence",
    "fields",
    "is_synthetic",
    "message_count",
    "closed_at",
    "created_at",
    "updated_at",
]

MESSAGE_COLUMNS = [
    "id",
    "case_id",
    "seq",
    "sender",
    "author_id",
    "content",
    "attachments",
    "created_at",
]

FILTER_KEYS = {
    "audit": {"case_id", "actor_id", "action", "bulk_operation_id", "since", "until"},
    "cases": {"status", "priority", "category", "kind", "assigned_to", "subject_user_id", "tag", "q"},
    "messages": {"case_id", "sender", "author_id", "since", "until"},
}


@dataclass(frozen=True)
class ExportPlan:
    """Validated export request; built before the stream starts."""

    entity: str
    fmt: str
    filters: dict[str, Any] = field(default_factory=dict)
    after: str | None = None

    @property
    def media_type(self) -> str:
        return "text/csv" if self.fmt == "csv" else "application/json"

    @property
    def columns(self) -> list[str]:
        return {"audit": AUDIT_COLUMNS, "cases": CASE_COLUMNS, "messages": MESSAGE_COLUMNS}[self.entity]


# =============================================================================
# Serialization
# =============================================================================

def _csv_safe(value: str) -> str:
    if value and value.startswith(CSV_DANGEROUS_PREFIXES):
        return f"'{value}"
    return value


def _serialize_csv_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True, default=str)
    return str(value)


def _write_csv_row(values: Sequence[Any]) -> str:
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow([_csv_safe(_serialize_csv_value(value)) for value in values])
    return output.getvalue()


def _json_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    return value


# =============================================================================
# Filters and cursors
# =============================================================================

def parse_export_filter(raw: str | None, entity: str) -> dict[str, str]:
    """
    Parse ``key=value,key=value`` into a dict.

    Raises ValidationFailedError for malformed pairs or keys the entity
    does not support.
    """
    if entity not in FILTER_KEYS:
        raise ValidationFailedError(f"Unknown export entity '{entity}'", entity=entity)
    parsed: dict[str, str] = {}
    if not raw:
        return parsed
    for pair in raw.split(","):
        pair = pair.strip()
        if not pair:
            continue
        key, sep, value = pair.partition("=")
        key, value = key.strip(), value.strip()
        if not sep or not key:
            raise ValidationFailedError(f"Malformed filter '{pair}' (expected key=value)")
        if key not in FILTER_KEYS[entity]:
            raise ValidationFailedError(
                f"Unsupported filter '{key}' for {entity} export",
                allowed=",".join(sorted(FILTER_KEYS[entity])),
            )
        parsed[key] = value
    return parsed


def _parse_uuid(value: str, name: str) -> UUID:
    try:
        return UUID(value)
    except ValueError as exc:
        raise ValidationFailedError(f"Invalid {name} '{value}'") from exc


def _parse_datetime(value: str, name: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValidationFailedError(f"Invalid {name} '{value}'") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _encode_cursor(*, sort_ts: datetime, row_id: UUID) -> str:
    payload = {"sort_ts": sort_ts.isoformat(), "id": str(row_id)}
    return base64.urlsafe_b64encode(json.dumps(payload).encode("utf-8")).decode("utf-8")


def _decode_cursor(cursor: str) -> tuple[datetime, UUID]:
    try:
        decoded = base64.urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8")
        payload = json.loads(decoded)
        sort_ts = datetime.fromisoformat(payload["sort_ts"])
        row_id = UUID(payload["id"])
        if sort_ts.tzinfo is None:
            sort_ts = sort_ts.replace(tzinfo=timezone.utc)
        return sort_ts, row_id
    except (ValueError, KeyError, TypeError) as exc:
        raise ValidationFailedError("Invalid export cursor") from exc


def _decode_audit_cursor(cursor: str) -> int:
    try:
        return int(cursor)
    except ValueError as exc:
        raise ValidationFailedError("Invalid export cursor") from exc


def build_plan(entity: str, fmt: str, raw_filter: str | None = None, after: str | None = None) -> ExportPlan:
    """Validate everything up front so errors surface before any bytes stream."""
    fmt = (fmt or "csv").lower()
    if fmt not in EXPORT_FORMATS:
        raise ValidationFailedError(f"Unknown export format '{fmt}'", format=fmt)
    filters: dict[str, Any] = dict(parse_export_filter(raw_filter, entity))

    for key in ("case_id", "bulk_operation_id"):
        if key in filters:
            filters[key] = _parse_uuid(filters[key], key)
    for key in ("since", "until"):
        if key in filters:
            filters[key] = _parse_datetime(filters[key], key)

    if entity == "cases":
        # Surface bad status values now rather than mid-stream
        case_store.apply_filters(select(Case), case_store.CaseFilters(**filters))

    if after:
        if entity == "audit":
            _decode_audit_cursor(after)
        else:
            _decode_cursor(after)
    return ExportPlan(entity=entity, fmt=fmt, filters=filters, after=after or None)


# =============================================================================
# Keyset pages
# =============================================================================

def _audit_pages(db: Session, plan: ExportPlan, page_size: int) -> Iterator[list[tuple[str, list[Any]]]]:
    query = audit_service.apply_filters(
        select(AuditEntry), audit_service.AuditFilters(**plan.filters)
    )
    last_id = _decode_audit_cursor(plan.after) if plan.after else 0
    while True:
        rows = db.execute(
            query.where(AuditEntry.id > last_id).order_by(AuditEntry.id).limit(page_size)
        ).scalars().all()
        if not rows:
            return
        yield [
            (str(entry.id), [getattr(entry, column) for column in AUDIT_COLUMNS])
            for entry in rows
        ]
        last_id = rows[-1].id
        db.expunge_all()


def _keyset_pages(
    db: Session,
    query,
    model,
    columns: list[str],
    after: str | None,
    page_size: int,
) -> Iterator[list[tuple[str, list[Any]]]]:
    cursor = _decode_cursor(after) if after else None
    while True:
        page_query = query
        if cursor:
            sort_ts, row_id = cursor
            page_query = page_query.where(
                or_(
                    model.created_at > sort_ts,
                    and_(model.created_at == sort_ts, model.id > row_id),
                )
            )
        rows = db.execute(
            page_query.order_by(model.created_at, model.id).limit(page_size)
        ).scalars().all()
        if not rows:
            return
        yield [
            (
                _encode_cursor(sort_ts=row.created_at, row_id=row.id),
                [getattr(row, column) for column in columns],
            )
            for row in rows
        ]
        cursor = (rows[-1].created_at, rows[-1].id)
        db.expunge_all()


def _pages(db: Session, plan: ExportPlan) -> Iterator[list[tuple[str, list[Any]]]]:
    page_size = max(settings.EXPORT_PAGE_SIZE, 1)
    if plan.entity == "audit":
        return _audit_pages(db, plan, page_size)

    if plan.entity == "cases":
        query = case_store.apply_filters(select(Case), case_store.CaseFilters(**plan.filters))
        return _keyset_pages(db, query, Case, CASE_COLUMNS, plan.after, page_size)

    query = select(CaseMessage)
    if "case_id" in plan.filters:
        query = query.where(CaseMessage.case_id == plan.filters["case_id"])
    if "sender" in plan.filters:
        query = query.where(CaseMessage.sender == plan.filters["sender"])
    if "author_id" in plan.filters:
        query = query.where(CaseMessage.author_id == plan.filters["author_id"])
    if "since" in plan.filters:
        query = query.where(CaseMessage.created_at >= plan.filters["since"])
    if "until" in plan.filters:
        query = query.where(CaseMessage.created_at <= plan.filters["until"])
    return _keyset_pages(db, query, CaseMessage, MESSAGE_COLUMNS, plan.after, page_size)


def stream_export(db: Session, plan: ExportPlan) -> Iterator[str]:
    """
    Yield the export as CSV lines or as a JSON array, one page at a time.

    Stopping iteration early (client disconnect) leaves nothing behind.
    """
    columns = plan.columns
    if plan.fmt == "csv":
        yield _write_csv_row([*columns, "cursor"])
        for page in _pages(db, plan):
            for cursor, values in page:
                yield _write_csv_row([*values, cursor])
        return

    yield "["
    first = True
    for page in _pages(db, plan):
        for cursor, values in page:
            record = {column: _json_value(value) for column, value in zip(columns, values)}
            record["cursor"] = cursor
            prefix = "\n" if first else ",\n"
            first = False
            yield prefix + json.dumps(record, sort_keys=True, default=str)
    yield "\n]\n"
