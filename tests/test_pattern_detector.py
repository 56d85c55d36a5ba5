"""Tests for the suspicious pattern heuristics.

Alerts are captured through a mock sink; time is driven by ManualClock.
"""

from __future__ import annotations

import logging
from unittest.mock import Mock

import pytest

from donation_guard.core.scheduling import ManualClock, ManualScheduler
from donation_guard.detection.patterns import (
    DetectorThresholds,
    PatternDetector,
    Signal,
    normalize_amount,
)

# 2023-11-15 03:00:00 UTC
OFF_HOURS_TS = 1_700_017_200.0


@pytest.fixture
def sink() -> Mock:
    return Mock()


@pytest.fixture
def detector(clock: ManualClock, sink: Mock) -> PatternDetector:
    return PatternDetector(clock=clock, sink=sink)


def _alerts(sink: Mock, signal: Signal | None = None) -> list[dict]:
    alerts = [c.args[2] for c in sink.call_args_list]
    if signal is None:
        return alerts
    return [a for a in alerts if a["signal"] == signal.value]


class TestHighVelocity:
    def test_alerts_from_fifth_donation(self, detector: PatternDetector, sink: Mock) -> None:
        for _ in range(4):
            detector.detect_high_velocity("1.2.3.4", "10", "GDEST")
        assert sink.call_count == 0

        detector.detect_high_velocity("1.2.3.4", "10", "GDEST")
        detector.detect_high_velocity("1.2.3.4", "10", "GDEST")

        alerts = _alerts(sink, Signal.HIGH_VELOCITY)
        assert [a["count"] for a in alerts] == [5, 6]
        first = alerts[0]
        assert first["identifier"] == "1.2.3.4"
        assert first["severity"] == "medium"
        assert first["window_seconds"] == 300.0
        assert first["threshold"] == 5
        assert first["pattern"] == "rapid_succession"
        assert "timestamp" in first

    def test_alert_goes_to_sink_at_warning(self, detector: PatternDetector, sink: Mock) -> None:
        for _ in range(5):
            detector.detect_high_velocity("ip")

        scope, message, _ = sink.call_args.args
        assert scope == "suspicious_pattern"
        assert message == "Suspicious pattern detected: high_velocity_donations"
        assert sink.call_args.kwargs["level"] == logging.WARNING

    def test_window_restarts_after_elapsing(
        self, detector: PatternDetector, sink: Mock, clock: ManualClock
    ) -> None:
        for _ in range(4):
            detector.detect_high_velocity("ip")

        clock.advance(301)
        detector.detect_high_velocity("ip")

        assert sink.call_count == 0
        assert len(detector.velocity_tracking["ip"].observations) == 1


class TestIdenticalAmounts:
    def test_alerts_on_third_identical_amount(self, detector: PatternDetector, sink: Mock) -> None:
        detector.detect_identical_amounts("ip", 25)
        detector.detect_identical_amounts("ip", "25.00")
        assert sink.call_count == 0

        detector.detect_identical_amounts("ip", 25.0)
        detector.detect_identical_amounts("ip", "25")

        alerts = _alerts(sink, Signal.IDENTICAL_AMOUNT)
        assert [a["count"] for a in alerts] == [3, 4]
        assert alerts[0]["amount"] == "25"
        assert alerts[0]["pattern"] == "automation_suspected"
        assert alerts[0]["severity"] == "medium"

    def test_distinct_amounts_do_not_alert(self, detector: PatternDetector, sink: Mock) -> None:
        for amount in ("10", "20", "30"):
            detector.detect_identical_amounts("ip", amount)

        assert sink.call_count == 0

    def test_old_observations_are_pruned(
        self, detector: PatternDetector, sink: Mock, clock: ManualClock
    ) -> None:
        detector.detect_identical_amounts("ip", 5)
        detector.detect_identical_amounts("ip", 5)
        clock.advance(601)
        detector.detect_identical_amounts("ip", 5)

        assert sink.call_count == 0
        assert len(detector.amount_patterns["ip"].observations) == 1

    @pytest.mark.parametrize("amount", [None, 0, "", "abc", "NaN", True, {"x": 1}])
    def test_invalid_amounts_are_ignored(self, detector: PatternDetector, amount: object) -> None:
        detector.detect_identical_amounts("ip", amount)

        assert detector.amount_patterns == {}


class TestRecipientDiversity:
    def test_ten_distinct_recipients_alert_high(self, detector: PatternDetector, sink: Mock) -> None:
        for i in range(10):
            detector.detect_recipient_diversity("GDONOR", f"GRECIPIENT{i}")

        alerts = _alerts(sink, Signal.RECIPIENT_DIVERSITY)
        assert len(alerts) == 1
        assert alerts[0]["unique_recipients"] == 10
        assert alerts[0]["severity"] == "high"
        assert alerts[0]["identifier"] == "GDONOR"

    def test_repeated_recipient_does_not_grow_set(self, detector: PatternDetector, sink: Mock) -> None:
        for _ in range(20):
            detector.detect_recipient_diversity("GDONOR", "GSAME")

        assert detector.recipient_patterns["GDONOR"].recipients == {"GSAME"}
        assert sink.call_count == 0

    def test_missing_recipient_is_noop(self, detector: PatternDetector) -> None:
        detector.detect_recipient_diversity("GDONOR", None)
        detector.detect_recipient_diversity(None, "GRECIPIENT")

        assert detector.recipient_patterns == {}


class TestSequentialFailures:
    def test_five_quick_failures_alert(self, detector: PatternDetector, sink: Mock, clock: ManualClock) -> None:
        for _ in range(5):
            detector.detect_sequential_failures("ip", "invalid_signature")
            clock.advance(5)

        alerts = _alerts(sink, Signal.SEQUENTIAL_FAILURES)
        assert len(alerts) == 1
        assert alerts[0]["count"] == 5
        assert alerts[0]["error_type"] == "invalid_signature"
        assert alerts[0]["severity"] == "low"
        assert alerts[0]["pattern"] == "probing_suspected"

    def test_long_gap_restarts_streak(self, detector: PatternDetector, clock: ManualClock) -> None:
        detector.detect_sequential_failures("ip", "x")
        clock.advance(70)
        detector.detect_sequential_failures("ip", "x")

        assert detector.sequential_failures["ip"].count == 1

    def test_reset_failures_removes_entry(self, detector: PatternDetector) -> None:
        detector.detect_sequential_failures("ip", "x")

        detector.reset_failures("ip")

        assert "ip" not in detector.sequential_failures

    def test_missing_error_type_is_reported_as_unknown(self, detector: PatternDetector, sink: Mock) -> None:
        for _ in range(5):
            detector.detect_sequential_failures("ip")

        assert _alerts(sink)[-1]["error_type"] == "unknown"


class TestOffHours:
    def test_requests_outside_off_hours_are_not_tracked(self, detector: PatternDetector) -> None:
        detector.detect_off_hours_activity("ip")

        assert detector.time_patterns == {}

    def test_alerts_after_twenty_off_hours_requests(
        self, detector: PatternDetector, sink: Mock, clock: ManualClock
    ) -> None:
        clock.set(OFF_HOURS_TS)
        for _ in range(19):
            detector.detect_off_hours_activity("ip")
        assert sink.call_count == 0

        detector.detect_off_hours_activity("ip")

        alerts = _alerts(sink, Signal.OFF_HOURS)
        assert len(alerts) == 1
        assert alerts[0]["count"] == 20
        assert alerts[0]["hour"] == 3
        assert alerts[0]["pattern"] == "unusual_timing"


class TestRobustness:
    @pytest.mark.parametrize("identifier", [None, "", "   ", 42])
    def test_invalid_identifiers_are_noop(self, detector: PatternDetector, sink: Mock, identifier) -> None:
        detector.detect_high_velocity(identifier, 10)
        detector.detect_identical_amounts(identifier, 10)
        detector.detect_sequential_failures(identifier, "x")
        detector.detect_off_hours_activity(identifier)
        detector.reset_failures(identifier)

        assert sum(detector.get_metrics().values()) == 0
        assert sink.call_count == 0

    def test_sink_errors_do_not_propagate(self, clock: ManualClock) -> None:
        sink = Mock(side_effect=RuntimeError("sink down"))
        detector = PatternDetector(DetectorThresholds(velocity_limit=1), clock=clock, sink=sink)

        detector.detect_high_velocity("ip")

        assert sink.call_count == 1

    def test_amounts_normalize_to_same_value(self) -> None:
        assert normalize_amount(5.5) == normalize_amount("5.5") == normalize_amount("5.50")


class TestMaintenance:
    def test_metrics_report_each_map(self, detector: PatternDetector) -> None:
        detector.detect_high_velocity("ip", 10)
        detector.detect_identical_amounts("ip", 10)
        detector.detect_recipient_diversity("GDONOR", "GRECIPIENT")
        detector.detect_sequential_failures("ip", "x")

        assert detector.get_metrics() == {
            "velocity_tracking": 1,
            "amount_patterns": 1,
            "recipient_patterns": 1,
            "sequential_failures": 1,
            "time_patterns": 0,
        }

    def test_cleanup_removes_stale_state_and_is_idempotent(
        self, detector: PatternDetector, clock: ManualClock
    ) -> None:
        clock.set(OFF_HOURS_TS)
        detector.detect_high_velocity("ip", 10)
        detector.detect_identical_amounts("ip", 10)
        detector.detect_recipient_diversity("GDONOR", "GRECIPIENT")
        detector.detect_sequential_failures("ip", "x")
        detector.detect_off_hours_activity("ip")

        clock.advance(86_401)

        assert detector.cleanup() == 5
        assert detector.cleanup() == 0
        assert sum(detector.get_metrics().values()) == 0

    def test_cleanup_keeps_fresh_state(self, detector: PatternDetector, clock: ManualClock) -> None:
        detector.detect_high_velocity("ip", 10)
        detector.detect_sequential_failures("ip", "x")
        clock.advance(30)

        assert detector.cleanup() == 0
        assert detector.get_metrics()["velocity_tracking"] == 1

    def test_scheduled_cleanup(self, detector: PatternDetector, clock: ManualClock) -> None:
        scheduler = ManualScheduler(clock)
        detector.detect_sequential_failures("ip", "x")

        detector.start(scheduler)
        scheduler.advance(3600 + 900)

        assert "ip" not in detector.sequential_failures
        detector.stop()
        assert scheduler.pending == 0

    def test_reset_clears_everything(self, detector: PatternDetector) -> None:
        detector.detect_high_velocity("ip", 10)
        detector.detect_recipient_diversity("GDONOR", "GRECIPIENT")

        detector.reset()

        assert sum(detector.get_metrics().values()) == 0
