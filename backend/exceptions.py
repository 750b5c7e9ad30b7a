"""
Domain errors for the custody ledger and payment verification.

Every failure carries a stable code and a human-readable reason. The API
layer turns them into JSON responses; nothing here knows about HTTP beyond
the status code each error maps to.
"""

from typing import Optional


class DomainError(Exception):
    """Base exception for business rule violations."""

    code = "domain_error"
    status_code = 400
    # Retryable means "retry with different input", never "retry blindly"
    retryable = False
    default_reason = "Request could not be processed"

    def __init__(self, reason: Optional[str] = None):
        self.reason = reason or self.default_reason
        super().__init__(self.reason)

    def to_dict(self) -> dict:
        return {"detail": self.reason, "code": self.code, "retryable": self.retryable}


class NotFound(DomainError):
    code = "not_found"
    status_code = 404
    default_reason = "Record not found"


class Unauthorized(DomainError):
    """Cross-tenant / cross-branch access or wrong role."""

    code = "unauthorized"
    status_code = 403
    default_reason = "Not allowed to access this record"


class InvalidState(DomainError):
    """Illegal transition on a terminal or wrong-status record."""

    code = "invalid_state"
    status_code = 409
    default_reason = "Record is not in a state that allows this action"


class ValidationFailed(DomainError):
    code = "validation_failed"
    status_code = 422
    retryable = True
    default_reason = "Invalid input"


class InsufficientCustody(DomainError):
    code = "insufficient_custody"
    status_code = 409
    retryable = True
    default_reason = "Insufficient cash in hand"


class CapacityUnavailable(DomainError):
    code = "capacity_unavailable"
    status_code = 409
    retryable = True
    default_reason = "Platform subscription inactive"


class CapacityExceeded(DomainError):
    code = "capacity_exceeded"
    status_code = 409
    retryable = True
    default_reason = "Active student limit reached"


class OperationTimeout(DomainError):
    code = "timeout"
    status_code = 504
    retryable = True
    default_reason = "The operation timed out"


class PersistenceError(DomainError):
    """Wraps lower-level database errors. Detail stays in the server log."""

    code = "persistence_error"
    status_code = 500
    default_reason = "Internal error while saving changes"


class InvariantViolation(RuntimeError):
    """A derived balance went negative. This is a bug, not a user error."""
