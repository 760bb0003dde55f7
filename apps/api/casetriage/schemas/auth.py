"""Authentication-related Pydantic schemas."""

from pydantic import BaseModel

from casetriage.db.enums import Role


class TokenPayload(BaseModel):
    """Decoded JWT payload structure."""
    sub: str  # operator_id
    role: str


class OperatorSession(BaseModel):
    """
    Session context for authenticated requests.

    Returned by the get_current_operator dependency.
    """
    operator_id: str
    role: Role
