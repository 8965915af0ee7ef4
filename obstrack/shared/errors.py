"""Error taxonomy for obstrack services.

Every failure a user can see maps onto one of these types. Components raise
them; the client workspace and HTTP handlers turn them into typed results.
"""
from typing import Optional


class ObstrackError(Exception):
    """Base exception for all obstrack errors."""

    kind: str = "error"

    def __init__(self, message: str = "", kind: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class AuthError(ObstrackError):
    """Bad credentials, weak password or duplicate email.

    User-correctable; shown inline and never retried.
    """

    INVALID_CREDENTIALS = "invalid_credentials"
    DUPLICATE_EMAIL = "duplicate_email"
    WEAK_PASSWORD = "weak_password"
    INVALID_EMAIL = "invalid_email"
    UNAVAILABLE = "unavailable"

    kind = INVALID_CREDENTIALS


class AccessDeniedError(ObstrackError, PermissionError):
    """Role mismatch, rejected locally before any write."""

    kind = "access_denied"


class NotVerifiedError(ObstrackError):
    """Email verification has not completed yet."""

    kind = "not_verified"


class StoreError(ObstrackError):
    """Transient document store failure on read, write or subscribe."""

    kind = "store_error"


class ValidationError(ObstrackError):
    """Payload or bucket key rejected before it reaches the store."""

    kind = "validation_error"


class DuplicateRequestError(ObstrackError):
    """An approval request already exists for the bucket."""

    kind = "duplicate_request"


class TerminalStateError(ObstrackError):
    """Approval request already decided."""

    kind = "terminal_state"


class RecordNotFoundError(ObstrackError):
    """Referenced record does not exist."""

    kind = "not_found"
