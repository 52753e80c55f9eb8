"""Bounded retry of transient failures."""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..domains.errors import TransientError, UnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how patiently a single remote call is retried."""
    attempts: int = 3
    initial_delay: float = 0.5
    max_delay: float = 5.0
    multiplier: float = 2.0
    sleep: Optional[Callable[[float], None]] = None

    def call(self, func: Callable[[], T], description: str = "remote call") -> T:
        """
        Run ``func``, retrying only on TransientError.

        Args:
            func: Zero-argument callable performing one remote call
            description: Used in log lines and the exhaustion error

        Returns:
            Whatever ``func`` returns

        Raises:
            UnavailableError: If every attempt failed with a TransientError
            FlyError: Any non-transient error, raised after the first occurrence
        """
        retrying = Retrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=self.initial_delay, min=self.initial_delay,
                                  max=self.max_delay, exp_base=self.multiplier),
            retry=retry_if_exception_type(TransientError),
            sleep=self.sleep or time.sleep,
            before_sleep=lambda state: logger.warning(
                f"{description} failed (attempt {state.attempt_number}/{self.attempts}), retrying: "
                f"{state.outcome.exception()}"
            ),
        )
        try:
            return retrying(func)
        except RetryError as e:
            last = e.last_attempt.exception()
            raise UnavailableError(
                f"{description} still failing after {self.attempts} attempts: {last}",
                status=getattr(last, "status", None),
            ) from last


NO_RETRY = RetryPolicy(attempts=1)
