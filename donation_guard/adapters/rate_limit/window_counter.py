"""Per-key sliding-window counter with lazy expiry and periodic sweep.

Each key owns a window that starts on its first increment. An elapsed window
reads as empty immediately (lazy expiry) and is physically deleted later by
``cleanup()``, which runs on an injected scheduler, never on the request path.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from donation_guard.core.scheduling import AbstractScheduler, Clock, ScheduledJob

logger = logging.getLogger(__name__)


@dataclass
class CounterWindow:
    count: int
    window_start: float


class WindowCounter:
    """Count events per key inside a window of ``window_seconds``.

    Not thread-safe: all mutation happens on a single event loop.
    """

    def __init__(self, window_seconds: float, *, clock: Clock = time.time) -> None:
        """Initialize the counter.

        Args:
            window_seconds: Window length in seconds.
            clock: Time source returning UNIX time in seconds.

        Raises:
            ValueError: If window_seconds is not positive.
        """
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")

        self._window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, CounterWindow] = {}
        self._cleanup_job: ScheduledJob | None = None

    @property
    def window_seconds(self) -> float:
        return self._window_seconds

    def _is_live(self, window: CounterWindow, now: float) -> bool:
        return now - window.window_start < self._window_seconds

    def increment(self, key: str) -> int:
        """Count one event for ``key`` and return the count in its window."""
        now = self._clock()
        window = self._windows.get(key)
        if window is None or not self._is_live(window, now):
            window = CounterWindow(count=0, window_start=now)
            self._windows[key] = window
        window.count += 1
        return window.count

    def get_count(self, key: str) -> int:
        """Return the live count for ``key`` without mutating state."""
        window = self._windows.get(key)
        if window is None or not self._is_live(window, self._clock()):
            return 0
        return window.count

    def get_time_until_reset(self, key: str) -> float:
        """Seconds until the window of ``key`` elapses (0 when unknown/elapsed)."""
        window = self._windows.get(key)
        if window is None:
            return 0.0
        elapsed = self._clock() - window.window_start
        return max(0.0, self._window_seconds - elapsed)

    def cleanup(self) -> int:
        """Delete windows that elapsed more than one full window ago.

        A window that has only just elapsed is kept; it is about to be reused
        by the next increment for that key.

        Returns:
            Number of removed entries.
        """
        now = self._clock()
        retention = self._window_seconds * 2
        stale = [
            key for key, window in self._windows.items() if now - window.window_start > retention
        ]
        for key in stale:
            del self._windows[key]

        if stale:
            logger.debug(
                "window_counter.cleanup",
                extra={"removed": len(stale), "tracked_keys": len(self._windows)},
            )
        return len(stale)

    def reset(self) -> None:
        """Drop all state."""
        self._windows.clear()

    def get_metrics(self) -> dict[str, float | int]:
        return {
            "tracked_keys": len(self._windows),
            "window_seconds": self._window_seconds,
        }

    def start(self, scheduler: AbstractScheduler, interval_seconds: float, *, name: str = "window_counter") -> None:
        """Run ``cleanup`` every ``interval_seconds`` on ``scheduler``."""
        self.stop()
        self._cleanup_job = scheduler.every(interval_seconds, self.cleanup, name=name)

    def stop(self) -> None:
        """Cancel the periodic sweep; safe to call repeatedly."""
        if self._cleanup_job is not None:
            self._cleanup_job.cancel()
            self._cleanup_job = None
