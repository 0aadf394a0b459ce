"""Cancellation and deadline control for one sync pass.

WHAT:
    A small object shared by every component of a pass. Each network call and
    each throttling sleep goes through `check()` / `sleep()`.

WHY:
    A full sync can run for many minutes because of deliberate throttling.
    Callers need to stop it (client disconnected, worker shutdown) or bound it
    with a deadline, and a stop must also wake a pending backoff sleep.
"""

import logging
import threading
import time
from typing import Callable, Optional

from adsync.exceptions import SyncCancelled, SyncDeadlineExceeded

logger = logging.getLogger(__name__)


class SyncControl:
    """Cancellation token + deadline + interruptible sleep.

    Usage:
        control = SyncControl(deadline_seconds=1800)
        control.check()       # raises SyncCancelled / SyncDeadlineExceeded
        control.sleep(2.0)    # wakes early on cancel()
        control.cancel()      # from another thread
    """

    def __init__(
        self,
        deadline_seconds: Optional[float] = None,
        sleep: Optional[Callable[[float], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            deadline_seconds: Wall budget for the whole pass (None = unbounded)
            sleep: Replacement sleep function (tests inject a recorder)
            clock: Monotonic clock used for the deadline
        """
        self._event = threading.Event()
        self._sleep = sleep
        self._clock = clock
        self._deadline = clock() + deadline_seconds if deadline_seconds else None
        self.slept: float = 0.0

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        """Request cancellation. Safe to call from any thread."""
        if not self._event.is_set():
            logger.info("[SYNC_CONTROL] Cancellation requested")
        self._event.set()

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline (None when unbounded)."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - self._clock())

    def check(self) -> None:
        """Raise if the pass was cancelled or ran out of time."""
        if self._event.is_set():
            raise SyncCancelled("Sync cancelled by caller")
        if self._deadline is not None and self._clock() >= self._deadline:
            raise SyncDeadlineExceeded("Sync deadline exceeded")

    def sleep(self, seconds: float) -> None:
        """Wait `seconds`, waking early on cancellation."""
        self.check()
        if seconds <= 0:
            return

        remaining = self.remaining()
        if remaining is not None and seconds > remaining:
            # Never sleep past the deadline
            seconds = remaining

        self.slept += seconds
        if self._sleep is not None:
            self._sleep(seconds)
        else:
            self._event.wait(seconds)
        self.check()
