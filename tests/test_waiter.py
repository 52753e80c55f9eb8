"""Tests for the convergence waiter and the transient retry policy."""
import threading

import pytest

from agent_flytoolkit.fleet.domains.errors import (
    ConvergenceTimeoutError,
    InvalidInputError,
    NotFoundError,
    OperationCancelledError,
    TransientError,
    UnavailableError,
)
from agent_flytoolkit.fleet.workflows.retry import RetryPolicy
from agent_flytoolkit.fleet.workflows.waiter import ConvergenceWaiter


class ScriptedPoll:
    """Returns (or raises) the scripted outcomes in order, repeating the last one."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    def __call__(self):
        outcome = self.outcomes[min(self.calls, len(self.outcomes) - 1)]
        self.calls += 1
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class TestConvergenceWaiter:
    """Tests for ConvergenceWaiter.wait_for."""

    def test_converges_after_three_polls(self):
        """Each re-poll waits at least the minimum delay; delays never shrink."""
        sleeps = []
        waiter = ConvergenceWaiter(initial_delay=0.5, max_delay=10.0, timeout=60, sleep=sleeps.append)
        poll = ScriptedPoll("starting", "starting", "started")

        result = waiter.wait_for(poll, lambda state: state == "started", "machine")

        assert result == "started"
        assert poll.calls == 3
        assert len(sleeps) == 2
        assert all(delay >= 0.5 for delay in sleeps)
        assert sleeps == sorted(sleeps)

    def test_delays_grow_until_cap(self):
        sleeps = []
        waiter = ConvergenceWaiter(initial_delay=1.0, max_delay=4.0, multiplier=2.0,
                                   timeout=60, sleep=sleeps.append)
        poll = ScriptedPoll(*(["pending"] * 5 + ["done"]))

        waiter.wait_for(poll, lambda state: state == "done")

        assert sleeps == [1.0, 2.0, 4.0, 4.0, 4.0]

    def test_transient_failure_is_retried(self):
        sleeps = []
        waiter = ConvergenceWaiter(initial_delay=0.1, max_delay=1.0, timeout=60, max_polls=3,
                                   sleep=sleeps.append)
        poll = ScriptedPoll(TransientError("503", status=503), "started")

        assert waiter.wait_for(poll, lambda state: state == "started") == "started"
        assert poll.calls == 2

    def test_not_found_surfaces_immediately(self):
        sleeps = []
        waiter = ConvergenceWaiter(initial_delay=0.1, timeout=60, sleep=sleeps.append)
        poll = ScriptedPoll(NotFoundError("gone", status=404), "started")

        with pytest.raises(NotFoundError):
            waiter.wait_for(poll, lambda state: state == "started")
        assert poll.calls == 1
        assert sleeps == []

    def test_timeout_keeps_last_state(self):
        waiter = ConvergenceWaiter(initial_delay=0.1, max_delay=0.2, timeout=60, max_polls=4,
                                   sleep=lambda _: None)
        poll = ScriptedPoll("starting")

        with pytest.raises(ConvergenceTimeoutError) as exc_info:
            waiter.wait_for(poll, lambda state: state == "started", "machine m1")
        assert exc_info.value.last_state == "starting"
        assert poll.calls == 4
        assert "machine m1" in str(exc_info.value)

    def test_deadline_elapsed(self):
        """A zero deadline still polls once before giving up."""
        waiter = ConvergenceWaiter(initial_delay=0.1, timeout=0, sleep=lambda _: None)
        poll = ScriptedPoll("starting")

        with pytest.raises(ConvergenceTimeoutError):
            waiter.wait_for(poll, lambda state: state == "started")
        assert poll.calls == 1

    def test_persistent_transient_failure_is_unavailable(self):
        waiter = ConvergenceWaiter(initial_delay=0.1, timeout=60, max_polls=3, sleep=lambda _: None)
        poll = ScriptedPoll(TransientError("502", status=502))

        with pytest.raises(UnavailableError) as exc_info:
            waiter.wait_for(poll, lambda state: True)
        assert exc_info.value.status == 502
        assert poll.calls == 3

    def test_cancel_before_first_poll(self):
        cancel = threading.Event()
        cancel.set()
        waiter = ConvergenceWaiter(sleep=lambda _: None)
        poll = ScriptedPoll("started")

        with pytest.raises(OperationCancelledError):
            waiter.wait_for(poll, lambda state: True, cancel_event=cancel)
        assert poll.calls == 0

    def test_cancel_during_wait(self):
        cancel = threading.Event()
        waiter = ConvergenceWaiter(initial_delay=0.1, timeout=60, sleep=lambda _: cancel.set())
        poll = ScriptedPoll("starting")

        with pytest.raises(OperationCancelledError):
            waiter.wait_for(poll, lambda state: state == "started", cancel_event=cancel)
        assert poll.calls == 1

    def test_cancelled_wait_leaves_waiter_usable(self):
        """Cancelling one wait does not abort the next wait on the same waiter."""
        cancel = threading.Event()
        cancel.set()
        waiter = ConvergenceWaiter(initial_delay=0.1, timeout=60, sleep=lambda _: None)

        with pytest.raises(OperationCancelledError):
            waiter.wait_for(ScriptedPoll("started"), lambda state: True, cancel_event=cancel)
        poll = ScriptedPoll("starting", "started")
        assert waiter.wait_for(poll, lambda state: state == "started") == "started"
        assert poll.calls == 2

    def test_never_sleeps_past_deadline(self):
        """A sleep that would end after the deadline is not started."""
        sleeps = []
        waiter = ConvergenceWaiter(initial_delay=1.0, max_delay=1.0, timeout=0.5, sleep=sleeps.append)
        poll = ScriptedPoll("starting")

        with pytest.raises(ConvergenceTimeoutError):
            waiter.wait_for(poll, lambda state: state == "started")
        assert poll.calls == 1
        assert sleeps == []

    @pytest.mark.parametrize("kwargs", [
        {"initial_delay": 0},
        {"initial_delay": 2.0, "max_delay": 1.0},
        {"multiplier": 0.5},
        {"timeout": -1},
    ])
    def test_rejects_invalid_parameters(self, kwargs):
        with pytest.raises(ValueError):
            ConvergenceWaiter(**kwargs)


class TestRetryPolicy:
    """Tests for RetryPolicy.call."""

    def test_returns_after_transient_failures(self):
        sleeps = []
        policy = RetryPolicy(attempts=3, initial_delay=0.2, sleep=sleeps.append)
        func = ScriptedPoll(TransientError("timeout"), TransientError("timeout"), "ok")

        assert policy.call(func) == "ok"
        assert func.calls == 3
        assert sleeps == [0.2, 0.4]

    def test_exhausted_budget_is_unavailable(self):
        policy = RetryPolicy(attempts=2, sleep=lambda _: None)
        func = ScriptedPoll(TransientError("503", status=503))

        with pytest.raises(UnavailableError) as exc_info:
            policy.call(func, "listing apps")
        assert func.calls == 2
        assert "listing apps" in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, TransientError)

    def test_invalid_input_never_retried(self):
        policy = RetryPolicy(attempts=5, sleep=lambda _: None)
        func = ScriptedPoll(InvalidInputError("bad"))

        with pytest.raises(InvalidInputError):
            policy.call(func)
        assert func.calls == 1
