from threading import Event

from pnr.retry import RestartPolicy, RetryPolicy
from pnr.runtime import RuntimeState


def test_wait_for_stops_at_first_success():
    calls = []
    sleeps = []

    def check():
        calls.append(1)
        return len(calls) == 3

    assert RetryPolicy(attempts=5, interval_s=1.0).wait_for(check, sleep=sleeps.append) is True
    assert len(calls) == 3
    assert sleeps == [1.0, 1.0]


def test_wait_for_gives_up_after_budget():
    sleeps = []
    assert RetryPolicy(attempts=3, interval_s=0.5).wait_for(lambda: False, sleep=sleeps.append) is False
    # No sleep after the last attempt.
    assert sleeps == [0.5, 0.5]


def test_wait_for_honours_cancellation():
    cancel = Event()
    cancel.set()
    calls = []
    assert RetryPolicy(attempts=10, interval_s=0).wait_for(lambda: calls.append(1), cancel=cancel) is False
    assert calls == []


def test_restart_policy_threshold():
    assert RestartPolicy(1).should_restart(1)
    assert not RestartPolicy(3).should_restart(2)
    assert RestartPolicy(3).should_restart(3)
    assert RestartPolicy(0).should_restart(1)


def test_reload_failures_reset_on_success():
    state = RuntimeState()
    assert state.mark_reload("dns", False) == 1
    assert state.mark_reload("dns", False) == 2
    assert state.mark_reload("dns", True) == 0
    assert state.mark_reload("proxy", False) == 1
