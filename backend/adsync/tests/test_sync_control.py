"""Unit tests for SyncControl.

WHAT: Cancellation, deadline and interruptible sleep behaviour
WHY: Every backoff and throttling wait in a pass goes through this object;
     a broken check means a cancelled sync keeps burning quota
"""

import threading

import pytest

from adsync.exceptions import SyncCancelled, SyncDeadlineExceeded
from adsync.services.sync_control import SyncControl


class _FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestCancellation:
    def test_check_passes_when_not_cancelled(self):
        control = SyncControl()
        control.check()
        assert control.cancelled is False

    def test_check_raises_after_cancel(self):
        control = SyncControl()
        control.cancel()

        with pytest.raises(SyncCancelled):
            control.check()

    def test_sleep_raises_when_cancelled_during_wait(self):
        """WHAT: A cancel() issued while sleeping surfaces right after the wait.
        WHY: A worker shutdown must not wait for the next network call.
        """
        control = SyncControl(sleep=lambda seconds: control.cancel())

        with pytest.raises(SyncCancelled):
            control.sleep(5.0)

    def test_real_sleep_wakes_on_cancel(self):
        """WHAT: Without an injected sleep, cancel() from another thread ends the wait early."""
        control = SyncControl()
        timer = threading.Timer(0.05, control.cancel)
        timer.start()
        try:
            with pytest.raises(SyncCancelled):
                control.sleep(30.0)
        finally:
            timer.cancel()


class TestSleep:
    def test_records_requested_sleep(self):
        recorded = []
        control = SyncControl(sleep=recorded.append)

        control.sleep(2.0)
        control.sleep(0)

        assert recorded == [2.0]
        assert control.slept == 2.0


class TestDeadline:
    def test_remaining_is_none_without_deadline(self):
        assert SyncControl().remaining() is None

    def test_check_raises_once_deadline_passed(self):
        clock = _FakeClock()
        control = SyncControl(deadline_seconds=10, clock=clock)

        control.check()
        clock.advance(10)

        with pytest.raises(SyncDeadlineExceeded):
            control.check()

    def test_deadline_error_is_a_cancellation(self):
        assert issubclass(SyncDeadlineExceeded, SyncCancelled)

    def test_sleep_is_clamped_to_the_deadline(self):
        """WHAT: A 48s backoff with 5s left sleeps 5s, then fails.
        WHY: The caller learns about the deadline as soon as it passes.
        """
        clock = _FakeClock()
        recorded = []

        def fake_sleep(seconds):
            recorded.append(seconds)
            clock.advance(seconds)

        control = SyncControl(deadline_seconds=5, sleep=fake_sleep, clock=clock)

        with pytest.raises(SyncDeadlineExceeded):
            control.sleep(48.0)

        assert recorded == [5.0]
