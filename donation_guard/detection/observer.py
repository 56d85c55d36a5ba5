"""Request/response observer feeding the suspicious pattern detector.

The observer is purely advisory: it never changes a response other than
tagging it with ``X-Abuse-Signal`` and it never raises into the request
pipeline. Identifiers that exceed the per-window request or failure budget
are flagged, and every flag is written to the audit trail.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Mapping

from donation_guard.adapters.rate_limit.window_counter import WindowCounter
from donation_guard.audit.trail import (
    AuditAction,
    AuditCategory,
    AuditResult,
    AuditSeverity,
    AuditTrail,
)
from donation_guard.core.config import AbuseSettings
from donation_guard.core.scheduling import AbstractScheduler, Clock
from donation_guard.detection.patterns import PatternDetector

logger = logging.getLogger(__name__)

ABUSE_SIGNAL_HEADER = "X-Abuse-Signal"

_DONOR_FIELDS = ("senderId", "donor", "donorId")
_RECIPIENT_FIELDS = ("receiverId", "recipient", "recipientId")


def _first_str(body: Mapping[str, Any], names: tuple[str, ...]) -> str | None:
    for name in names:
        value = body.get(name)
        if isinstance(value, str) and value.strip():
            return value
    return None


@dataclass(frozen=True)
class RequestContext:
    """What the observer needs to know about an inbound request."""

    identifier: str | None
    method: str
    path: str
    amount: object = None
    donor: str | None = None
    recipient: str | None = None
    request_id: str | None = None
    user_agent: str | None = None

    @classmethod
    def from_body(
        cls,
        *,
        identifier: str | None,
        method: str,
        path: str,
        body: object,
        request_id: str | None = None,
        user_agent: str | None = None,
    ) -> RequestContext:
        """Build a context from a decoded JSON body; non-mapping bodies are ignored."""
        fields: Mapping[str, Any] = body if isinstance(body, Mapping) else {}
        return cls(
            identifier=identifier,
            method=method.upper(),
            path=path,
            amount=fields.get("amount"),
            donor=_first_str(fields, _DONOR_FIELDS),
            recipient=_first_str(fields, _RECIPIENT_FIELDS),
            request_id=request_id,
            user_agent=user_agent,
        )


@dataclass(frozen=True)
class ResponseOutcome:
    status_code: int
    success: bool | None = None
    error_code: str | None = None

    @property
    def failed(self) -> bool:
        return self.success is False or self.status_code >= 400


@dataclass
class AbuseObserver:
    """Feeds request/response observations into the pattern detector."""

    detector: PatternDetector
    audit_trail: AuditTrail | None = None
    settings: AbuseSettings = field(default_factory=AbuseSettings)
    clock: Clock = time.time

    def __post_init__(self) -> None:
        self.requests = WindowCounter(self.settings.window_seconds, clock=self.clock)
        self.failures = WindowCounter(self.settings.window_seconds, clock=self.clock)
        self._pending_flags: set[asyncio.Task[None]] = set()

    def _is_donation(self, ctx: RequestContext) -> bool:
        return ctx.method == "POST" and any(
            marker in ctx.path for marker in self.settings.donation_path_markers
        )

    def observe_request(self, ctx: RequestContext) -> None:
        """Record an inbound request."""
        try:
            self.detector.detect_off_hours_activity(ctx.identifier)
            if ctx.identifier:
                self.requests.increment(ctx.identifier)
        except Exception as exc:
            logger.error(
                "abuse_observer.error",
                extra={"stage": "request", "error_type": type(exc).__name__, "error_msg": str(exc)},
            )

    def observe_response(self, ctx: RequestContext, outcome: ResponseOutcome) -> None:
        """Record the outcome of a request and run the donation heuristics."""
        try:
            if outcome.failed:
                self.detector.detect_sequential_failures(
                    ctx.identifier, outcome.error_code or "unknown"
                )
                if ctx.identifier:
                    self.failures.increment(ctx.identifier)
                return

            if self._is_donation(ctx):
                self.detector.detect_high_velocity(ctx.identifier, ctx.amount, ctx.recipient)
                if ctx.amount is not None:
                    self.detector.detect_identical_amounts(ctx.identifier, ctx.amount)
                if ctx.donor and ctx.recipient:
                    self.detector.detect_recipient_diversity(ctx.donor, ctx.recipient)

            self.detector.reset_failures(ctx.identifier)
        except Exception as exc:
            logger.error(
                "abuse_observer.error",
                extra={"stage": "response", "error_type": type(exc).__name__, "error_msg": str(exc)},
            )

    def is_flagged(self, identifier: str | None) -> bool:
        """Whether the identifier exceeded the request or failure budget."""
        if not identifier:
            return False
        try:
            return (
                self.requests.get_count(identifier) >= self.settings.request_threshold
                or self.failures.get_count(identifier) >= self.settings.failure_threshold
            )
        except Exception as exc:
            logger.error(
                "abuse_observer.error",
                extra={"stage": "flag", "error_type": type(exc).__name__, "error_msg": str(exc)},
            )
            return False

    async def record_flag(self, ctx: RequestContext) -> None:
        """Write an IP_FLAGGED audit record; failures are logged, not raised."""
        if self.audit_trail is None:
            return

        try:
            await self.audit_trail.log(
                category=AuditCategory.ABUSE_DETECTION,
                action=AuditAction.IP_FLAGGED,
                severity=AuditSeverity.HIGH,
                result=AuditResult.SUCCESS,
                request_id=ctx.request_id,
                ip_address=ctx.identifier,
                resource=ctx.path,
                details={"method": ctx.method, "user_agent": ctx.user_agent},
            )
        except Exception as exc:
            logger.error(
                "abuse_observer.audit_failed",
                extra={"error_type": type(exc).__name__, "error_msg": str(exc)},
            )

    def schedule_flag(self, ctx: RequestContext) -> asyncio.Task[None] | None:
        """Run ``record_flag`` in the background so the request never waits on storage.

        Must be called from a running event loop. The task is kept until it
        finishes; ``drain`` waits for whatever is still in flight.
        """
        if self.audit_trail is None:
            return None

        task = asyncio.get_running_loop().create_task(
            self.record_flag(ctx), name="abuse_flag_audit"
        )
        self._pending_flags.add(task)
        task.add_done_callback(self._pending_flags.discard)
        return task

    async def drain(self) -> None:
        """Wait for in-flight flag writes to finish."""
        if self._pending_flags:
            await asyncio.gather(*self._pending_flags, return_exceptions=True)

    def get_metrics(self) -> dict[str, int]:
        return {
            "tracked_requesters": self.requests.get_metrics()["tracked_keys"],
            "tracked_failing": self.failures.get_metrics()["tracked_keys"],
        }

    def cleanup(self) -> int:
        return self.requests.cleanup() + self.failures.cleanup()

    def start(self, scheduler: AbstractScheduler) -> None:
        interval = self.settings.cleanup_interval_seconds
        self.requests.start(scheduler, interval, name="abuse_requests")
        self.failures.start(scheduler, interval, name="abuse_failures")

    def stop(self) -> None:
        self.requests.stop()
        self.failures.stop()
