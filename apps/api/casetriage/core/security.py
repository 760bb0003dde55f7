"""Operator token helpers.

Tokens are minted by the external auth service; the engine only verifies
them. ``create_operator_token`` exists for local tooling and tests.
"""

from datetime import datetime, timedelta, timezone

import jwt

from casetriage.core.config import settings


def create_operator_token(operator_id: str, role: str) -> str:
    """
    Create signed operator JWT.

    Always signs with current secret (JWT_SECRET).
    """
    payload = {
        "sub": operator_id,
        "role": role,
        "iat": datetime.now(timezone.utc),
        "exp": datetime.now(timezone.utc) + timedelta(hours=settings.JWT_EXPIRES_HOURS),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm="HS256")


def decode_operator_token(token: str) -> dict:
    """
    Decode and verify operator JWT.

    Tries current secret first, then previous (for rotation support).

    Raises:
        jwt.InvalidTokenError: If token invalid with all secrets
    """
    last_error = None
    for secret in settings.jwt_secrets:
        try:
            return jwt.decode(token, secret, algorithms=["HS256"])
        except jwt.InvalidTokenError as e:
            last_error = e
            continue
    raise last_error  # type: ignore
