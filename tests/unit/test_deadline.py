"""
Unit tests for DeadlineRunner.

Run with: pytest tests/unit/test_deadline.py -v
"""

from concurrent.futures import TimeoutError as FuturesTimeout
import threading
import time
import pytest

from utils.deadline import DeadlineRunner


@pytest.fixture
def runner():
    runner = DeadlineRunner("test-runner", max_workers=1)
    yield runner
    runner.shutdown()


def wait_until(condition, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return condition()


class TestCall:
    """Calls that finish in time."""

    def test_returns_result(self, runner):
        assert runner.call(lambda a, b: a + b, 2, 3, timeout=1.0) == 5

    def test_exception_propagates(self, runner):
        def fail():
            raise ValueError("nope")

        with pytest.raises(ValueError):
            runner.call(fail, timeout=1.0)

        assert runner.abandoned == 0


class TestDeadline:
    """Calls that miss the deadline."""

    def test_running_call_tracked_until_it_returns(self, runner):
        release = threading.Event()

        with pytest.raises(FuturesTimeout):
            runner.call(release.wait, 5, timeout=0.05, context={"batch": 1})

        assert runner.abandoned == 1

        release.set()

        assert wait_until(lambda: runner.abandoned == 0)

    def test_queued_call_cancelled(self, runner):
        release = threading.Event()
        ran = []

        with pytest.raises(FuturesTimeout):
            runner.call(release.wait, 5, timeout=0.05)
        with pytest.raises(FuturesTimeout):
            runner.call(ran.append, "late", timeout=0.05)

        release.set()
        assert wait_until(lambda: runner.abandoned == 0)
        # Give the freed worker a moment; the cancelled call must not run
        time.sleep(0.05)

        assert ran == []

    def test_pool_reused_after_abandoned_call(self, runner):
        release = threading.Event()
        with pytest.raises(FuturesTimeout):
            runner.call(release.wait, 5, timeout=0.05)
        release.set()
        assert wait_until(lambda: runner.abandoned == 0)

        assert runner.call(lambda: "ok", timeout=1.0) == "ok"
