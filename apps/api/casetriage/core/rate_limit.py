"""Rate limiting for the triage API.

Limits are keyed by the authenticated operator so that several operators
behind one proxy do not share a budget. Unauthenticated calls fall back to
the client address.
"""

import logging

import jwt
from slowapi import Limiter
from starlette.requests import Request

from casetriage.core.config import settings
from casetriage.core.security import decode_operator_token

logger = logging.getLogger(__name__)


def client_address(request: Request) -> str:
    """Client IP, honouring X-Forwarded-For only behind a trusted proxy."""
    if settings.TRUST_PROXY_HEADERS:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "unknown"


def operator_or_address(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    if auth_header.lower().startswith("bearer "):
        try:
            payload = decode_operator_token(auth_header[7:].strip())
        except jwt.InvalidTokenError:
            payload = None
        if payload and payload.get("sub"):
            return f"operator:{payload['sub']}"
    return f"ip:{client_address(request)}"


def _storage_uri() -> str:
    if settings.TESTING or not settings.REDIS_URL:
        return "memory://"
    logger.info("Rate limits shared through %s", settings.REDIS_URL.split("@")[-1])
    return settings.REDIS_URL


API_LIMIT = f"{settings.RATE_LIMIT_API}/minute"
EXPORT_LIMIT = f"{max(settings.RATE_LIMIT_EXPORT, 1)}/minute"

limiter = Limiter(
    key_func=operator_or_address,
    storage_uri=_storage_uri(),
    default_limits=[] if settings.RATE_LIMIT_API <= 0 else [API_LIMIT],
    enabled=not settings.TESTING,
)
