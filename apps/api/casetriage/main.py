"""FastAPI application entry point."""
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from casetriage.core.config import settings
from casetriage.core.structured_logging import build_log_context
from casetriage.db.session import engine
from casetriage.services.errors import ErrorKind, TriageError

logger = logging.getLogger(__name__)

# ============================================================================
# Sentry Integration (optional, for production error tracking)
# ============================================================================

def _init_sentry() -> None:
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENV,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
        ],
        traces_sample_rate=0.1,  # 10% of requests for performance monitoring
        send_default_pii=False,  # Don't send PII to Sentry
    )
    logger.info("Sentry initialized for %s", settings.ENV)


if settings.SENTRY_DSN and settings.ENV not in ("dev", "test"):
    _init_sentry()

# ============================================================================
# Rate Limiting
# ============================================================================

from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from casetriage.core.rate_limit import limiter


# ============================================================================
# FastAPI App
# ============================================================================

app = FastAPI(
    title="Case Triage API",
    description="Intake, triage, workflow and audit for disputes, tickets, claims and anti-cheat flags",
    version=settings.VERSION,
    docs_url="/docs" if settings.ENV == "dev" else None,
    redoc_url="/redoc" if settings.ENV == "dev" else None,
)

# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)

# CORS middleware - must be added before routers
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
    expose_headers=["Content-Disposition", "Retry-After"],
)


# ============================================================================
# Error mapping
# ============================================================================

HTTP_STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INVALID_TRANSITION: 409,
    ErrorKind.CASE_CLOSED: 409,
    ErrorKind.ALREADY_ASSIGNED: 409,
    ErrorKind.VALIDATION_FAILED: 422,
    ErrorKind.TIMEOUT: 503,
    ErrorKind.AUDIT_WRITE_FAILED: 500,
}


@app.exception_handler(TriageError)
async def triage_error_handler(request: Request, exc: TriageError) -> JSONResponse:
    status_code = HTTP_STATUS_BY_KIND.get(exc.kind, 500)
    log_context = build_log_context(route=request.url.path, method=request.method)
    if status_code >= 500:
        logger.error("Triage error %s: %s", exc.kind.value, exc.message, extra=log_context)
    else:
        logger.info("Triage error %s: %s", exc.kind.value, exc.message, extra=log_context)
    headers = {"Retry-After": "1"} if exc.kind is ErrorKind.TIMEOUT else None
    return JSONResponse(status_code=status_code, content=exc.to_dict(), headers=headers)


# ============================================================================
# Routers
# ============================================================================

from casetriage.routers import audit_router, cases_router, export_router

app.include_router(cases_router)
app.include_router(audit_router)
app.include_router(export_router)


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health")
def health():
    """
    Health check endpoint.

    Verifies database connectivity and returns environment info.
    """
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return {"status": "ok", "env": settings.ENV, "version": settings.VERSION}
