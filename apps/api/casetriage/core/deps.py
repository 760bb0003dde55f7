"""FastAPI dependencies for authentication, authorization, and database access."""

from typing import Generator

import jwt
from fastapi import Depends, HTTPException, Request
from pydantic import ValidationError
from sqlalchemy.orm import Session, sessionmaker

from casetriage.core.security import decode_operator_token
from casetriage.db.enums import Role
from casetriage.db.session import SessionLocal
from casetriage.schemas.auth import OperatorSession, TokenPayload


# Header names
AUTH_HEADER = "Authorization"
CSRF_HEADER = "X-Requested-With"
CSRF_HEADER_VALUE = "XMLHttpRequest"


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.

    Yields a database session and ensures it's closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> sessionmaker:
    """Session factory for streams that outlive the request-scoped session."""
    return SessionLocal


def get_current_operator(request: Request) -> OperatorSession:
    """
    Resolve the calling operator from the bearer token.

    Tokens are issued by the auth service; only the signature, expiry and
    role are checked here.

    Raises:
        HTTPException 401: Missing or invalid token
    """
    header = request.headers.get(AUTH_HEADER, "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Not authenticated")

    try:
        payload = TokenPayload.model_validate(decode_operator_token(token))
    except (jwt.InvalidTokenError, ValidationError):
        raise HTTPException(status_code=401, detail="Invalid token")

    if not Role.has_value(payload.role):
        raise HTTPException(status_code=401, detail="Invalid role")

    return OperatorSession(operator_id=payload.sub, role=Role(payload.role))


def require_roles(allowed_roles: list):
    """
    Dependency factory for role-based authorization.

    Uses enum values (not strings) to prevent drift.

    Usage:
        @router.get("/audit/verify", dependencies=[Depends(require_roles([Role.ADMIN]))])
    """
    def dependency(session: OperatorSession = Depends(get_current_operator)) -> OperatorSession:
        if session.role not in allowed_roles:
            raise HTTPException(
                status_code=403,
                detail=f"Role '{session.role.value}' not authorized for this action"
            )
        return session
    return dependency


def require_csrf_header(request: Request) -> None:
    """
    Verify CSRF header on mutations.

    Apply to state-changing endpoints (POST, PATCH, DELETE).

    Raises:
        HTTPException 403: Missing or invalid CSRF header
    """
    if request.headers.get(CSRF_HEADER) != CSRF_HEADER_VALUE:
        raise HTTPException(
            status_code=403,
            detail=f"Missing CSRF header. Include '{CSRF_HEADER}: {CSRF_HEADER_VALUE}'"
        )
