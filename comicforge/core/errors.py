"""
Error taxonomy for image generation and placement backends.

Every adapter maps its transport and API failures into one of these types
exactly once, at the adapter boundary. Retry decisions are made on the
``kind`` tag and the optional ``retry_after`` hint, never on message text.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Classification tag carried by every GenerationError."""
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    VALIDATION = "validation"
    TIMEOUT = "timeout"
    UNRECOVERABLE = "unrecoverable"
    UNKNOWN = "unknown"


class GenerationError(Exception):
    """Base class for classified backend errors."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.message = message
        self.retry_after = retry_after
        # Filled in by run_with_retry once the final attempt fails
        self.attempts: int = 0

    def __str__(self) -> str:
        return self.message


class ValidationError(GenerationError):
    """Malformed job input or a request the backend rejected as invalid. Never retried."""
    kind = ErrorKind.VALIDATION


class RateLimited(GenerationError):
    """Backend reported throttling. ``retry_after`` holds its wait hint in seconds."""
    kind = ErrorKind.RATE_LIMITED

    DEFAULT_RETRY_AFTER = 15.0

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(
            message,
            retry_after=retry_after if retry_after is not None else self.DEFAULT_RETRY_AFTER,
        )


class TransientBackendError(GenerationError):
    """Temporary backend failure (5xx, unfinished prediction, unparseable response)."""
    kind = ErrorKind.TRANSIENT


class TransportError(TransientBackendError):
    """Network-level failure talking to a backend."""


class JobTimeout(GenerationError):
    """A synchronous call, poll loop or job deadline elapsed."""
    kind = ErrorKind.TIMEOUT


class UnrecoverableBackendError(GenerationError):
    """Backend reported a terminal failure (FAILED, CANCELLED, auth rejected)."""
    kind = ErrorKind.UNRECOVERABLE


class ConfigurationError(Exception):
    """Batch-level misconfiguration: unknown backend, empty job list, missing credentials."""


def classify_error(error: BaseException) -> ErrorKind:
    """
    Return the classification tag for any exception.

    Args:
        error: Exception raised by a unit of work

    Returns:
        The error's own kind for GenerationError, otherwise ErrorKind.UNKNOWN
    """
    if isinstance(error, GenerationError):
        return error.kind
    return ErrorKind.UNKNOWN
