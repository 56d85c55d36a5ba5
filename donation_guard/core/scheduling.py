"""Clocks and periodic job schedulers for background sweeps.

Components that keep time-windowed state (counters, detectors) expire it
lazily on the request path and sweep it periodically off the request path.
They never create timers themselves: a scheduler is injected by the
composition root so that:

- production runs sweeps as asyncio tasks on the server event loop
- tests drive sweeps and time deterministically with ManualScheduler
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Job = Callable[[], object]


class ScheduledJob(ABC):
    """Handle returned by a scheduler; cancelling it stops future runs."""

    @abstractmethod
    def cancel(self) -> None:
        raise NotImplementedError

    @property
    @abstractmethod
    def cancelled(self) -> bool:
        raise NotImplementedError


class AbstractScheduler(ABC):
    """Interface for running a callback every ``interval_seconds``."""

    @abstractmethod
    def every(self, interval_seconds: float, job: Job, *, name: str) -> ScheduledJob:
        """Schedule ``job`` to run repeatedly.

        Args:
            interval_seconds: Delay between runs (first run after one interval).
            job: Zero-argument callable. Exceptions are logged, never raised.
            name: Job name used in logs.

        Returns:
            Handle used to cancel the job.
        """
        raise NotImplementedError


def _run_job(job: Job, name: str) -> None:
    try:
        job()
    except Exception:
        logger.exception("scheduler.job_failed", extra={"job": name})


class _AsyncioJob(ScheduledJob):
    def __init__(self, task: asyncio.Task[None]) -> None:
        self._task = task
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True
        self._task.cancel()

    @property
    def cancelled(self) -> bool:
        return self._cancelled or self._task.done()


class AsyncioScheduler(AbstractScheduler):
    """Runs jobs as asyncio tasks on the running event loop.

    Must be used from within a running loop (e.g. the FastAPI lifespan).
    """

    def every(self, interval_seconds: float, job: Job, *, name: str) -> ScheduledJob:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")

        async def _loop() -> None:
            while True:
                await asyncio.sleep(interval_seconds)
                _run_job(job, name)

        task = asyncio.get_running_loop().create_task(_loop(), name=f"sweep:{name}")
        logger.debug("scheduler.job_started", extra={"job": name, "interval_s": interval_seconds})
        return _AsyncioJob(task)


class ManualClock:
    """Virtual clock for deterministic tests; callable like ``time.time``."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.current = start

    def __call__(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds

    def set(self, value: float) -> None:
        self.current = value


@dataclass(order=True)
class _ManualEntry:
    due: float
    seq: int
    interval: float = field(compare=False)
    job: Job = field(compare=False)
    name: str = field(compare=False)
    cancelled: bool = field(default=False, compare=False)


class _ManualJob(ScheduledJob):
    def __init__(self, entry: _ManualEntry) -> None:
        self._entry = entry

    def cancel(self) -> None:
        self._entry.cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._entry.cancelled


class ManualScheduler(AbstractScheduler):
    """Scheduler driven by ``advance()`` instead of wall-clock time.

    Jobs run synchronously, in due order, while virtual time moves forward.
    The attached ManualClock is moved to each job's due time before it runs.
    """

    def __init__(self, clock: ManualClock | None = None) -> None:
        self.clock = clock or ManualClock()
        self._queue: list[_ManualEntry] = []
        self._seq = itertools.count()

    def every(self, interval_seconds: float, job: Job, *, name: str) -> ScheduledJob:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        entry = _ManualEntry(
            due=self.clock() + interval_seconds,
            seq=next(self._seq),
            interval=interval_seconds,
            job=job,
            name=name,
        )
        heapq.heappush(self._queue, entry)
        return _ManualJob(entry)

    @property
    def pending(self) -> int:
        return sum(1 for entry in self._queue if not entry.cancelled)

    def advance(self, seconds: float) -> int:
        """Move virtual time forward, running every job that falls due.

        Returns:
            Number of job runs performed.
        """
        target = self.clock() + seconds
        runs = 0
        while self._queue and self._queue[0].due <= target:
            entry = heapq.heappop(self._queue)
            if entry.cancelled:
                continue
            self.clock.set(entry.due)
            _run_job(entry.job, entry.name)
            runs += 1
            if not entry.cancelled:
                entry.due += entry.interval
                entry.seq = next(self._seq)
                heapq.heappush(self._queue, entry)
        self.clock.set(target)
        return runs

