"""Poll a remote resource until it reaches the expected state.

State-changing calls against the platform return before the change has
taken effect (a freshly created machine is not started yet). The waiter
polls with bounded exponential backoff until a predicate holds, a deadline
passes, or the caller cancels that particular wait.
"""
import logging
import threading
from typing import Any, Callable, Optional

from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    stop_before_delay,
    wait_exponential,
)

from ..domains.errors import (
    ConvergenceTimeoutError,
    OperationCancelledError,
    TransientError,
    UnavailableError,
)

logger = logging.getLogger(__name__)


class ConvergenceWaiter:
    """
    Bounded-backoff poller.

    The waiter only holds configuration, so one instance can serve any number
    of concurrent waits. Cancellation is per wait, see ``wait_for``.

    Args:
        initial_delay: Minimum delay before the first re-poll, in seconds
        max_delay: Cap for the growing delay
        multiplier: Growth factor between consecutive delays
        timeout: Deadline for the whole wait, in seconds; no sleep runs past it
        max_polls: Optional hard limit on the number of polls
        sleep: Replacement for the interruptible sleep (tests)
    """

    def __init__(self, initial_delay: float = 0.5, max_delay: float = 10.0,
                 multiplier: float = 2.0, timeout: float = 120.0,
                 max_polls: Optional[int] = None,
                 sleep: Optional[Callable[[float], None]] = None):
        if initial_delay <= 0:
            raise ValueError("initial_delay must be positive")
        if max_delay < initial_delay:
            raise ValueError("max_delay must not be smaller than initial_delay")
        if multiplier < 1:
            raise ValueError("multiplier must be at least 1")
        if timeout < 0:
            raise ValueError("timeout must not be negative")
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self.timeout = timeout
        self.max_polls = max_polls
        self._sleep_func = sleep

    def wait_for(self, poll: Callable[[], Any], predicate: Callable[[Any], bool],
                 description: str = "resource",
                 cancel_event: Optional[threading.Event] = None) -> Any:
        """
        Poll until ``predicate(poll())`` is true.

        Args:
            poll: Fetches the current state; one remote call
            predicate: True once the state is the expected one
            description: Used in log lines and errors
            cancel_event: Set it to abort this wait only

        Returns:
            The last observed state (the one satisfying the predicate)

        Raises:
            ConvergenceTimeoutError: Deadline elapsed; ``last_state`` holds the last observation
            UnavailableError: Deadline elapsed while polls kept failing transiently
            OperationCancelledError: ``cancel_event`` was set
            FlyError: Any non-transient poll failure, raised immediately
        """
        if cancel_event is None:
            cancel_event = threading.Event()

        def check_cancelled():
            if cancel_event.is_set():
                raise OperationCancelledError(f"Wait for {description} cancelled")

        def sleep(seconds: float):
            if self._sleep_func is not None:
                self._sleep_func(seconds)
            else:
                cancel_event.wait(seconds)
            check_cancelled()

        def attempt():
            check_cancelled()
            return poll()

        # Stops before a sleep that would end past the deadline.
        stop = stop_before_delay(self.timeout)
        if self.max_polls is not None:
            stop = stop | stop_after_attempt(self.max_polls)

        retrying = Retrying(
            stop=stop,
            wait=wait_exponential(multiplier=self.initial_delay, min=self.initial_delay,
                                  max=self.max_delay, exp_base=self.multiplier),
            retry=(retry_if_exception_type(TransientError)
                   | retry_if_result(lambda state: not predicate(state))),
            sleep=sleep,
            before_sleep=lambda state: logger.debug(
                f"Waiting for {description}: poll {state.attempt_number} not converged, "
                f"next poll in {state.next_action.sleep:.2f}s"
            ),
        )
        try:
            state = retrying(attempt)
        except RetryError as e:
            last = e.last_attempt
            if last.failed:
                error = last.exception()
                raise UnavailableError(
                    f"Gave up waiting for {description}: last poll failed: {error}",
                    status=getattr(error, "status", None),
                ) from error
            last_state = last.result()
            raise ConvergenceTimeoutError(
                f"Timed out waiting for {description} after {last.attempt_number} polls "
                f"(last observed: {_describe(last_state)})",
                last_state=last_state,
            ) from None
        logger.info(f"{description} converged")
        return state


def _describe(state: Any) -> str:
    observed = getattr(state, "state", state)
    return getattr(observed, "value", str(observed))
