"""Error taxonomy for Fly Machines API operations."""
from typing import Any, Optional


class FlyError(Exception):
    """Base class for every error raised by the toolkit."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class NotFoundError(FlyError):
    """The platform reports that the resource does not exist."""


class ConflictError(FlyError):
    """Concurrent modification or duplicate name."""


class InvalidInputError(FlyError):
    """Missing or malformed identifiers or payload. Never retried."""


class TransientError(FlyError):
    """Network failure, timeout or 5xx-class response. Safe to retry."""


class UnavailableError(FlyError):
    """Retry budget for transient failures was exhausted."""


class ApiError(FlyError):
    """Non-success status that does not map onto a more specific error."""


class OperationCancelledError(FlyError):
    """The surrounding unit of work was cancelled while waiting."""


class ConvergenceTimeoutError(FlyError):
    """A polled resource did not reach the expected state before the deadline.

    The last observed state is kept on ``last_state`` for diagnostics.
    """

    def __init__(self, message: str, last_state: Any = None):
        super().__init__(message)
        self.last_state = last_state


class ConfigError(Exception):
    """Configuration error exception."""
    pass
