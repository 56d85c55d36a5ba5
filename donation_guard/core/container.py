"""Composition root for the security core.

Builds exactly one instance of each component and wires them together by
reference. Nothing in the core reaches for module-level singletons; the HTTP
layer finds the container on ``app.state.security``.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any

from donation_guard.adapters.rate_limit.base import AbstractRateLimiter
from donation_guard.adapters.rate_limit.in_memory import SlidingWindowRateLimiter
from donation_guard.adapters.rate_limit.window_counter import WindowCounter
from donation_guard.audit.store import AbstractAuditStore, SqlAlchemyAuditStore
from donation_guard.audit.trail import AuditTrail
from donation_guard.core.config import Settings
from donation_guard.core.logging import EventSink, log_event
from donation_guard.core.scheduling import AbstractScheduler, AsyncioScheduler, Clock
from donation_guard.detection.observer import AbuseObserver
from donation_guard.detection.patterns import DetectorThresholds, PatternDetector

logger = logging.getLogger(__name__)


@dataclass
class SecurityCore:
    """All long-lived security components of one application instance."""

    settings: Settings
    scheduler: AbstractScheduler
    rate_counter: WindowCounter
    rate_limiter: AbstractRateLimiter
    detector: PatternDetector
    abuse_observer: AbuseObserver
    audit_store: AbstractAuditStore
    audit_trail: AuditTrail

    async def start(self) -> None:
        """Prepare storage and register the periodic sweeps."""
        await self.audit_store.initialize()
        self.rate_counter.start(
            self.scheduler,
            self.settings.rate_limit.cleanup_interval_seconds,
            name="rate_limit_cleanup",
        )
        self.detector.start(self.scheduler)
        self.abuse_observer.start(self.scheduler)
        logger.info("security_core.started", extra={"app_env": self.settings.app_env})

    async def stop(self) -> None:
        """Cancel sweeps and release storage; safe to call more than once."""
        self.rate_counter.stop()
        self.detector.stop()
        self.abuse_observer.stop()
        await self.abuse_observer.drain()
        await self.audit_store.close()
        logger.info("security_core.stopped")

    def get_metrics(self) -> dict[str, Any]:
        return {
            "rate_limit": self.rate_counter.get_metrics(),
            "suspicious_patterns": self.detector.get_metrics(),
            "abuse": self.abuse_observer.get_metrics(),
        }


def build_security_core(
    settings: Settings,
    *,
    clock: Clock = time.time,
    scheduler: AbstractScheduler | None = None,
    audit_store: AbstractAuditStore | None = None,
    sink: EventSink = log_event,
) -> SecurityCore:
    """Wire the security components from settings.

    Args:
        settings: Application settings.
        clock: Time source shared by every component.
        scheduler: Runs periodic sweeps; defaults to an AsyncioScheduler.
        audit_store: Audit storage; defaults to SQLAlchemy on the configured URL.
        sink: Receiver of suspicious pattern alerts.

    Returns:
        A SecurityCore whose sweeps are not started yet.
    """
    rate_counter = WindowCounter(settings.rate_limit.window_seconds, clock=clock)
    rate_limiter = SlidingWindowRateLimiter(
        rate_counter,
        limit=settings.rate_limit.requests,
        clock=clock,
    )

    if audit_store is None:
        audit_store = SqlAlchemyAuditStore.from_url(
            settings.audit.database_url,
            echo=settings.audit.echo,
            create_schema=settings.audit.create_schema,
        )
    audit_trail = AuditTrail(audit_store, clock=clock)

    detector = PatternDetector(
        DetectorThresholds.from_settings(settings.detector),
        clock=clock,
        sink=sink,
    )
    abuse_observer = AbuseObserver(
        detector,
        audit_trail=audit_trail,
        settings=settings.abuse,
        clock=clock,
    )

    return SecurityCore(
        settings=settings,
        scheduler=scheduler or AsyncioScheduler(),
        rate_counter=rate_counter,
        rate_limiter=rate_limiter,
        detector=detector,
        abuse_observer=abuse_observer,
        audit_store=audit_store,
        audit_trail=audit_trail,
    )
