"""
Error taxonomy shared by the orchestrator components.

Every error carries an ``ErrorKind`` so the state machine can record why a
job failed without inspecting exception types.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Classification recorded as a job's failure reason."""
    VALIDATION = "ValidationError"
    PAYLOAD_TOO_LARGE = "PayloadTooLarge"
    TRANSIENT = "Transient"
    PERMANENT = "Permanent"
    INVALID_TRANSITION = "InvalidTransition"
    TIMEOUT = "Timeout"
    MAX_RETRIES_EXCEEDED = "MaxRetriesExceeded"
    NOT_FOUND = "NotFound"


class DemoforgeError(Exception):
    """Base exception for orchestrator errors."""

    kind: ErrorKind = ErrorKind.PERMANENT

    def __init__(self, message: str, *, detail: Optional[str] = None):
        self.message = message
        self.detail = detail
        super().__init__(message)


class ValidationError(DemoforgeError):
    """Bad input shape, rejected before any remote call."""
    kind = ErrorKind.VALIDATION


class PayloadTooLargeError(ValidationError):
    """Content exceeds the configured size bound."""
    kind = ErrorKind.PAYLOAD_TOO_LARGE


class TransientError(DemoforgeError):
    """Retryable remote failure (timeout, 5xx, rate limit)."""
    kind = ErrorKind.TRANSIENT

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[str] = None,
    ):
        self.status_code = status_code
        super().__init__(message, detail=detail)


class PermanentError(DemoforgeError):
    """Non-retryable remote failure (auth, quota, conflict)."""
    kind = ErrorKind.PERMANENT

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[str] = None,
    ):
        self.status_code = status_code
        super().__init__(message, detail=detail)


class ConflictError(PermanentError):
    """The remote resource exists and could not be reconciled (409)."""


class MaxRetriesExceededError(PermanentError):
    """A transient failure persisted past the retry budget."""
    kind = ErrorKind.MAX_RETRIES_EXCEEDED


class StageTimeoutError(DemoforgeError):
    """A stage made no progress before its deadline."""
    kind = ErrorKind.TIMEOUT


class InvalidTransitionError(DemoforgeError):
    """State machine misuse: the event is not allowed from the current status."""
    kind = ErrorKind.INVALID_TRANSITION

    def __init__(self, from_status: str, event: str, *, detail: Optional[str] = None):
        self.from_status = from_status
        self.event = event
        super().__init__(
            f"invalid transition: {event!r} from {from_status!r}",
            detail=detail,
        )


class NotFoundError(DemoforgeError):
    """A referenced record does not exist."""
    kind = ErrorKind.NOT_FOUND


class JobNotFoundError(NotFoundError):
    """Job id is unknown to the store."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"job {job_id} not found")


class ConcurrentModificationError(TransientError):
    """Conditional write kept losing to concurrent writers."""
