"""
Error taxonomy for the concierge engine.

Errors are raised by collaborators and converted into values by the
action dispatcher. Pure components never raise; they return totals.
Every error carries a wire ``code`` and a user-safe ``message`` so the
orchestrator can render a pre-authored response without leaking detail.
"""

from enum import Enum
from typing import Any, Optional


class ErrorCode(str, Enum):
    """Codes surfaced in the ``{code, message}`` response payload."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    DUPLICATE_ACTION = "DUPLICATE_ACTION"
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    STATE_INVARIANT = "STATE_INVARIANT"


class ConciergeError(Exception):
    """Base class for all engine errors."""

    code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_ERROR

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(ConciergeError):
    """A required payload field is missing or malformed. Never retried."""

    code = ErrorCode.VALIDATION_ERROR

    def __init__(self, field: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"Missing or invalid field: {field}")
        self.field = field


class NotFoundError(ConciergeError):
    """A lookup matched nothing. Rendered as a conversational message."""

    code = ErrorCode.NOT_FOUND


class DuplicateActionError(ConciergeError):
    """The dedup key was already processed; carries the original result."""

    code = ErrorCode.DUPLICATE_ACTION

    def __init__(self, message: str, original: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.original = original or {}


class ExternalServiceError(ConciergeError):
    """A collaborator timed out or failed. Retried only for idempotent reads."""

    code = ErrorCode.EXTERNAL_SERVICE_ERROR


class StateInvariantError(ConciergeError):
    """The state machine reached an impossible state/intent combination."""

    code = ErrorCode.STATE_INVARIANT
