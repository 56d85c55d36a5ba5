"""Suspicious pattern detection for donation traffic.

Five independent heuristics, each over its own per-identifier state:

- high velocity: many donations from one identifier in a short window
- identical amount: the same amount repeated (automation)
- recipient diversity: one donor paying many distinct recipients
- sequential failures: a streak of failed requests (probing)
- off-hours activity: sustained traffic between 02:00 and 06:00 UTC

Detection is observability only. Alerts go to an event sink and are never
returned to the caller, and no public operation raises: bad input is ignored
and internal errors are logged.
"""

from __future__ import annotations

import functools
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, TypeVar

from donation_guard.core.config import DetectorSettings
from donation_guard.core.logging import EventSink, log_event
from donation_guard.core.scheduling import AbstractScheduler, Clock, ScheduledJob

logger = logging.getLogger(__name__)

ALERT_SCOPE = "suspicious_pattern"

_F = TypeVar("_F", bound=Callable[..., None])


class Signal(str, Enum):
    HIGH_VELOCITY = "high_velocity_donations"
    IDENTICAL_AMOUNT = "identical_amount_pattern"
    RECIPIENT_DIVERSITY = "high_recipient_diversity"
    SEQUENTIAL_FAILURES = "sequential_failures"
    OFF_HOURS = "off_hours_activity"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


SEVERITY_BY_SIGNAL: dict[Signal, Severity] = {
    Signal.HIGH_VELOCITY: Severity.MEDIUM,
    Signal.IDENTICAL_AMOUNT: Severity.MEDIUM,
    Signal.RECIPIENT_DIVERSITY: Severity.HIGH,
    Signal.SEQUENTIAL_FAILURES: Severity.LOW,
    Signal.OFF_HOURS: Severity.LOW,
}


@dataclass(frozen=True)
class DetectorThresholds:
    """Windows (seconds) and trigger counts for every heuristic."""

    velocity_window: float = 300.0
    velocity_limit: int = 5
    identical_amount_count: int = 3
    identical_amount_window: float = 600.0
    recipient_diversity_limit: int = 10
    recipient_retention: float = 86400.0
    sequential_failure_limit: int = 5
    failure_gap: float = 60.0
    failure_retention: float = 3600.0
    off_hours_start: int = 2
    off_hours_end: int = 6
    off_hours_request_limit: int = 20
    off_hours_window: float = 86400.0
    cleanup_interval: float = 900.0

    @classmethod
    def from_settings(cls, cfg: DetectorSettings) -> DetectorThresholds:
        return cls(
            velocity_window=cfg.velocity_window_seconds,
            velocity_limit=cfg.velocity_limit,
            identical_amount_count=cfg.identical_amount_count,
            identical_amount_window=cfg.identical_amount_window_seconds,
            recipient_diversity_limit=cfg.recipient_diversity_limit,
            recipient_retention=cfg.recipient_retention_seconds,
            sequential_failure_limit=cfg.sequential_failure_limit,
            failure_gap=cfg.failure_gap_seconds,
            failure_retention=cfg.failure_retention_seconds,
            off_hours_start=cfg.off_hours_start,
            off_hours_end=cfg.off_hours_end,
            off_hours_request_limit=cfg.off_hours_request_limit,
            off_hours_window=cfg.off_hours_window_seconds,
            cleanup_interval=cfg.cleanup_interval_seconds,
        )


@dataclass(frozen=True)
class PatternAlert:
    """Structured alert published to the event sink."""

    signal: Signal
    identifier: str
    severity: Severity
    timestamp: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "signal": self.signal.value,
            "identifier": self.identifier,
            **self.metadata,
            "severity": self.severity.value,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class VelocityObservation:
    timestamp: float
    amount: Decimal | None
    recipient: str | None


@dataclass
class VelocityState:
    window_start: float
    observations: list[VelocityObservation] = field(default_factory=list)


@dataclass
class AmountHistory:
    # (timestamp, amount) pairs, oldest first
    observations: list[tuple[float, Decimal]] = field(default_factory=list)


@dataclass
class RecipientSet:
    last_seen: float
    recipients: set[str] = field(default_factory=set)


@dataclass
class FailureStreak:
    count: int
    last_failure: float


@dataclass
class OffHoursHistory:
    observations: list[float] = field(default_factory=list)


def _valid_identifier(value: object) -> bool:
    return isinstance(value, str) and bool(value.strip())


def normalize_amount(value: object) -> Decimal | None:
    """Parse a donation amount, returning None for missing/zero/invalid input.

    Examples:
        >>> normalize_amount("5.50")
        Decimal('5.5')
        >>> normalize_amount(5.5) == normalize_amount("5.5")
        True
        >>> normalize_amount("abc") is None
        True
    """
    if value is None or isinstance(value, bool):
        return None
    if not isinstance(value, (int, float, str, Decimal)):
        return None
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite() or amount == 0:
        return None
    return amount.normalize()


def _fail_open(method: _F) -> _F:
    """Log and swallow any error raised by a detection operation."""

    @functools.wraps(method)
    def wrapper(self: PatternDetector, *args: Any, **kwargs: Any) -> None:
        try:
            method(self, *args, **kwargs)
        except Exception as exc:
            logger.error(
                "suspicious_pattern.detection_error",
                extra={
                    "operation": method.__name__,
                    "error_type": type(exc).__name__,
                    "error_msg": str(exc),
                },
            )

    return wrapper  # type: ignore[return-value]


class PatternDetector:
    """Evaluates the suspicious pattern heuristics over per-identifier state.

    One instance is built by the composition root and shared by reference.
    State is bounded by the heuristic windows and swept by ``cleanup()``,
    which ``start()`` schedules on an injected scheduler.
    """

    def __init__(
        self,
        thresholds: DetectorThresholds | None = None,
        *,
        clock: Clock = time.time,
        sink: EventSink = log_event,
    ) -> None:
        self.thresholds = thresholds or DetectorThresholds()
        self._clock = clock
        self._sink = sink
        self._cleanup_job: ScheduledJob | None = None

        self.velocity_tracking: dict[str, VelocityState] = {}
        self.amount_patterns: dict[str, AmountHistory] = {}
        self.recipient_patterns: dict[str, RecipientSet] = {}
        self.sequential_failures: dict[str, FailureStreak] = {}
        self.time_patterns: dict[str, OffHoursHistory] = {}

    # -- heuristics -----------------------------------------------------

    @_fail_open
    def detect_high_velocity(
        self,
        identifier: str | None,
        amount: object = None,
        recipient: str | None = None,
    ) -> None:
        """Record a donation and alert when the window holds too many."""
        if not _valid_identifier(identifier):
            return

        now = self._clock()
        window = self.thresholds.velocity_window
        state = self.velocity_tracking.get(identifier)
        if state is None or now - state.window_start > window:
            state = VelocityState(window_start=now)
            self.velocity_tracking[identifier] = state

        state.observations.append(
            VelocityObservation(
                timestamp=now,
                amount=normalize_amount(amount),
                recipient=recipient if _valid_identifier(recipient) else None,
            )
        )

        count = len(state.observations)
        if count >= self.thresholds.velocity_limit:
            self._emit_alert(
                Signal.HIGH_VELOCITY,
                identifier,
                count=count,
                window_seconds=window,
                threshold=self.thresholds.velocity_limit,
                pattern="rapid_succession",
            )

    @_fail_open
    def detect_identical_amounts(self, identifier: str | None, amount: object) -> None:
        """Record an amount and alert when one value repeats in the window."""
        if not _valid_identifier(identifier):
            return
        value = normalize_amount(amount)
        if value is None:
            return

        now = self._clock()
        window = self.thresholds.identical_amount_window
        history = self.amount_patterns.setdefault(identifier, AmountHistory())

        cutoff = now - window
        history.observations = [(ts, amt) for ts, amt in history.observations if ts > cutoff]
        history.observations.append((now, value))

        top_amount, top_count = Counter(amt for _, amt in history.observations).most_common(1)[0]
        if top_count >= self.thresholds.identical_amount_count:
            self._emit_alert(
                Signal.IDENTICAL_AMOUNT,
                identifier,
                amount=format(top_amount, "f"),
                count=top_count,
                window_seconds=window,
                threshold=self.thresholds.identical_amount_count,
                pattern="automation_suspected",
            )

    @_fail_open
    def detect_recipient_diversity(self, donor: str | None, recipient: str | None) -> None:
        """Track distinct recipients of a donor and alert on high diversity."""
        if not _valid_identifier(donor) or not _valid_identifier(recipient):
            return

        now = self._clock()
        entry = self.recipient_patterns.get(donor)
        if entry is None:
            entry = RecipientSet(last_seen=now)
            self.recipient_patterns[donor] = entry
        entry.recipients.add(recipient)
        entry.last_seen = now

        unique = len(entry.recipients)
        if unique >= self.thresholds.recipient_diversity_limit:
            self._emit_alert(
                Signal.RECIPIENT_DIVERSITY,
                donor,
                unique_recipients=unique,
                threshold=self.thresholds.recipient_diversity_limit,
                pattern="distribution_suspected",
            )

    @_fail_open
    def detect_sequential_failures(self, identifier: str | None, error_type: object = None) -> None:
        """Extend the failure streak of an identifier and alert on long streaks."""
        if not _valid_identifier(identifier):
            return

        now = self._clock()
        streak = self.sequential_failures.get(identifier)
        if streak is None or now - streak.last_failure > self.thresholds.failure_gap:
            streak = FailureStreak(count=0, last_failure=now)
            self.sequential_failures[identifier] = streak

        streak.count += 1
        streak.last_failure = now

        if streak.count >= self.thresholds.sequential_failure_limit:
            self._emit_alert(
                Signal.SEQUENTIAL_FAILURES,
                identifier,
                count=streak.count,
                error_type=str(error_type) if error_type is not None else "unknown",
                threshold=self.thresholds.sequential_failure_limit,
                pattern="probing_suspected",
            )

    @_fail_open
    def detect_off_hours_activity(self, identifier: str | None) -> None:
        """Count requests made during off-hours and alert on sustained activity."""
        if not _valid_identifier(identifier):
            return

        now = self._clock()
        hour = self._utc_hour(now)
        if not self._is_off_hours(hour):
            return

        history = self.time_patterns.setdefault(identifier, OffHoursHistory())
        cutoff = now - self.thresholds.off_hours_window
        history.observations = [ts for ts in history.observations if ts > cutoff]
        history.observations.append(now)

        count = sum(1 for ts in history.observations if self._is_off_hours(self._utc_hour(ts)))
        if count >= self.thresholds.off_hours_request_limit:
            self._emit_alert(
                Signal.OFF_HOURS,
                identifier,
                count=count,
                hour=hour,
                threshold=self.thresholds.off_hours_request_limit,
                pattern="unusual_timing",
            )

    @_fail_open
    def reset_failures(self, identifier: str | None) -> None:
        """Forget the failure streak of an identifier after a success."""
        if _valid_identifier(identifier):
            self.sequential_failures.pop(identifier, None)

    # -- alerting -------------------------------------------------------

    @staticmethod
    def _utc_hour(timestamp: float) -> int:
        return datetime.fromtimestamp(timestamp, tz=timezone.utc).hour

    def _is_off_hours(self, hour: int) -> bool:
        return self.thresholds.off_hours_start <= hour < self.thresholds.off_hours_end

    def _emit_alert(self, signal: Signal, identifier: str, **metadata: Any) -> None:
        alert = PatternAlert(
            signal=signal,
            identifier=identifier,
            severity=SEVERITY_BY_SIGNAL[signal],
            timestamp=datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat(),
            metadata=metadata,
        )
        self._sink(
            ALERT_SCOPE,
            f"Suspicious pattern detected: {signal.value}",
            alert.to_dict(),
            level=logging.WARNING,
        )

    # -- maintenance ----------------------------------------------------

    def get_metrics(self) -> dict[str, int]:
        """Live number of tracked identifiers per heuristic."""
        return {
            "velocity_tracking": len(self.velocity_tracking),
            "amount_patterns": len(self.amount_patterns),
            "recipient_patterns": len(self.recipient_patterns),
            "sequential_failures": len(self.sequential_failures),
            "time_patterns": len(self.time_patterns),
        }

    def cleanup(self) -> int:
        """Remove stale per-identifier state from every heuristic.

        Returns:
            Number of identifier entries removed across all maps.
        """
        now = self._clock()
        t = self.thresholds
        removed = 0

        for ip in [
            ip
            for ip, state in self.velocity_tracking.items()
            if now - state.window_start > t.velocity_window * 2
        ]:
            del self.velocity_tracking[ip]
            removed += 1

        amount_cutoff = now - t.identical_amount_window * 2
        for ip, history in list(self.amount_patterns.items()):
            history.observations = [(ts, amt) for ts, amt in history.observations if ts > amount_cutoff]
            if not history.observations:
                del self.amount_patterns[ip]
                removed += 1

        for donor in [
            donor
            for donor, entry in self.recipient_patterns.items()
            if now - entry.last_seen > t.recipient_retention
        ]:
            del self.recipient_patterns[donor]
            removed += 1

        for ip in [
            ip
            for ip, streak in self.sequential_failures.items()
            if now - streak.last_failure > t.failure_retention
        ]:
            del self.sequential_failures[ip]
            removed += 1

        off_hours_cutoff = now - t.off_hours_window
        for ip, history in list(self.time_patterns.items()):
            history.observations = [ts for ts in history.observations if ts > off_hours_cutoff]
            if not history.observations:
                del self.time_patterns[ip]
                removed += 1

        logger.debug(
            "suspicious_pattern.cleanup",
            extra={"removed": removed, **self.get_metrics()},
        )
        return removed

    def reset(self) -> None:
        """Drop all tracked state."""
        self.velocity_tracking.clear()
        self.amount_patterns.clear()
        self.recipient_patterns.clear()
        self.sequential_failures.clear()
        self.time_patterns.clear()

    def start(self, scheduler: AbstractScheduler) -> None:
        """Run ``cleanup`` every ``cleanup_interval`` seconds on ``scheduler``."""
        self.stop()
        self._cleanup_job = scheduler.every(
            self.thresholds.cleanup_interval, self.cleanup, name="suspicious_pattern"
        )

    def stop(self) -> None:
        """Cancel the periodic sweep; safe to call repeatedly."""
        if self._cleanup_job is not None:
            self._cleanup_job.cancel()
            self._cleanup_job = None
