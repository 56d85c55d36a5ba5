"""Unit tests for the per-key window counter."""

from unittest.mock import Mock

import pytest

from donation_guard.adapters.rate_limit.window_counter import WindowCounter
from donation_guard.core.scheduling import ManualClock, ManualScheduler


def test_counts_increments_within_window() -> None:
    clock = Mock(return_value=1000.0)
    counter = WindowCounter(1, clock=clock)

    assert counter.increment("k") == 1
    assert counter.increment("k") == 2
    assert counter.get_count("k") == 2


def test_elapsed_window_reads_as_empty() -> None:
    clock = Mock(return_value=1000.0)
    counter = WindowCounter(10, clock=clock)
    counter.increment("k")

    clock.return_value = 1010.0
    assert counter.get_count("k") == 0
    assert counter.increment("k") == 1


def test_get_count_does_not_mutate() -> None:
    clock = Mock(return_value=1000.0)
    counter = WindowCounter(10, clock=clock)

    assert counter.get_count("missing") == 0
    assert counter.get_metrics()["tracked_keys"] == 0


def test_time_until_reset() -> None:
    clock = Mock(return_value=1000.0)
    counter = WindowCounter(60, clock=clock)

    assert counter.get_time_until_reset("unknown") == 0.0

    counter.increment("k")
    clock.return_value = 1015.0
    assert counter.get_time_until_reset("k") == pytest.approx(45.0)

    clock.return_value = 1100.0
    assert counter.get_time_until_reset("k") == 0.0


def test_cleanup_removes_backdated_entry() -> None:
    clock = ManualClock(1000.0)
    counter = WindowCounter(1, clock=clock)
    counter.increment("k")
    counter.increment("k")

    clock.advance(2.5)

    assert counter.cleanup() == 1
    assert counter.get_metrics()["tracked_keys"] == 0


def test_cleanup_keeps_recently_elapsed_window() -> None:
    clock = ManualClock(1000.0)
    counter = WindowCounter(10, clock=clock)
    counter.increment("k")

    clock.advance(15)

    assert counter.cleanup() == 0
    assert counter.get_count("k") == 0


def test_cleanup_is_idempotent() -> None:
    clock = ManualClock(1000.0)
    counter = WindowCounter(1, clock=clock)
    counter.increment("a")
    counter.increment("b")
    clock.advance(5)

    assert counter.cleanup() == 2
    assert counter.cleanup() == 0


def test_reset_clears_all_keys() -> None:
    counter = WindowCounter(60)
    counter.increment("a")
    counter.increment("b")

    counter.reset()

    assert counter.get_metrics() == {"tracked_keys": 0, "window_seconds": 60}


def test_scheduled_sweep_runs_until_stopped() -> None:
    clock = ManualClock(1000.0)
    scheduler = ManualScheduler(clock)
    counter = WindowCounter(1, clock=clock)
    counter.increment("k")

    counter.start(scheduler, 5)
    assert scheduler.advance(5) == 1
    assert counter.get_metrics()["tracked_keys"] == 0

    counter.stop()
    counter.stop()
    assert scheduler.pending == 0


@pytest.mark.parametrize("window", [0, -1])
def test_invalid_window(window: float) -> None:
    with pytest.raises(ValueError):
        WindowCounter(window)
