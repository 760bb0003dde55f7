"""Typed failures raised across the service boundary.

Every error carries an ``ErrorKind`` so callers (the HTTP layer, bulk
operations) can branch on the kind without string matching.
"""

from enum import Enum


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    INVALID_TRANSITION = "invalid_transition"
    CASE_CLOSED = "case_closed"
    ALREADY_ASSIGNED = "already_assigned"
    VALIDATION_FAILED = "validation_failed"
    TIMEOUT = "timeout"
    AUDIT_WRITE_FAILED = "audit_write_failed"


class TriageError(Exception):
    """Base exception for triage engine errors."""

    kind: ErrorKind = ErrorKind.VALIDATION_FAILED

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        payload = {"error": self.kind.value, "detail": self.message}
        if self.context:
            payload["context"] = {key: str(value) for key, value in self.context.items()}
        return payload


class NotFoundError(TriageError):
    kind = ErrorKind.NOT_FOUND


class CaseNotFoundError(NotFoundError):
    """Case not found."""


class OperatorNotFoundError(NotFoundError):
    """Operator unknown to the identity service."""


class BlobNotFoundError(NotFoundError):
    """Attachment reference unknown to the attachment store."""


class InvalidTransitionError(TriageError):
    """Status change not permitted for this kind/state."""

    kind = ErrorKind.INVALID_TRANSITION


class CaseClosedError(TriageError):
    """Mutation attempted on a closed (read-only) case."""

    kind = ErrorKind.CASE_CLOSED


class AlreadyAssignedError(TriageError):
    """Case is assigned and reassignment was not requested."""

    kind = ErrorKind.ALREADY_ASSIGNED


class ValidationFailedError(TriageError):
    """Missing resolution, malformed category, bad payload."""

    kind = ErrorKind.VALIDATION_FAILED


class StoreTimeoutError(TriageError):
    """Store unavailable or lock not acquired in time. Safe to retry."""

    kind = ErrorKind.TIMEOUT


class AuditWriteError(TriageError):
    """Audit append failed; the paired mutation was rolled back."""

    kind = ErrorKind.AUDIT_WRITE_FAILED
