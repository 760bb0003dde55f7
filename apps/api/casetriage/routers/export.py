"""Streaming exports of audit entries, cases and messages."""

from datetime import datetime, timezone
from typing import Iterator

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import sessionmaker

from casetriage.core.deps import get_current_operator, get_session_factory
from casetriage.core.rate_limit import EXPORT_LIMIT, limiter
from casetriage.schemas.auth import OperatorSession
from casetriage.services import export_service
from casetriage.services.export_service import ExportPlan


router = APIRouter(prefix="/export", tags=["Export"])


def _stream(factory: sessionmaker, plan: ExportPlan) -> Iterator[str]:
    # Dedicated read-only session: the stream outlives the request scope
    db = factory()
    try:
        yield from export_service.stream_export(db, plan)
    finally:
        db.close()


@router.get("", response_class=StreamingResponse)
@limiter.limit(EXPORT_LIMIT)
def export(
    request: Request,
    entity: str = Query("audit", description="audit, cases or messages"),
    fmt: str = Query("csv", alias="format", description="csv or json"),
    raw_filter: str | None = Query(None, alias="filter", description="key=value pairs separated by commas"),
    after: str | None = Query(None, description="Resume after this row cursor"),
    session: OperatorSession = Depends(get_current_operator),
    factory: sessionmaker = Depends(get_session_factory),
) -> StreamingResponse:
    """Export matching records (CSV or JSON) without touching case state."""
    plan = export_service.build_plan(entity, fmt, raw_filter=raw_filter, after=after)

    filename = (
        f"{plan.entity}_export_{datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')}.{plan.fmt}"
    )
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    return StreamingResponse(
        _stream(factory, plan),
        media_type=plan.media_type,
        headers=headers,
    )
