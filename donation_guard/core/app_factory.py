"""Application factory for the FastAPI app.

Centralizes app construction (security core, middleware, handlers, routers)
so the surrounding service and the tests build identical stacks.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable

from fastapi import APIRouter, FastAPI

from donation_guard.api.routes import health_router
from donation_guard.core.config import Settings
from donation_guard.core.config import settings as default_settings
from donation_guard.core.container import SecurityCore, build_security_core
from donation_guard.core.exception_handlers import setup_exception_handlers
from donation_guard.core.logging import configure_logging
from donation_guard.core.middleware import abuse_observation_middleware, request_id_middleware


def create_app(
    settings: Settings | None = None,
    *,
    core: SecurityCore | None = None,
    routers: Iterable[APIRouter] = (),
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        settings: Settings to build from; defaults to the environment.
        core: Prebuilt security core (tests inject clocks and stores this way).
        routers: Business routers contributed by the surrounding service.

    Returns:
        Configured FastAPI app with middleware, handlers and routers.
    """
    cfg = core.settings if core is not None else (settings or default_settings)

    # Logging first so subsequent init logs are formatted as desired
    configure_logging(cfg.log)

    security = core or build_security_core(cfg)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await security.start()
        try:
            yield
        finally:
            await security.stop()

    app = FastAPI(
        title="Donation Guard",
        description=(
            "Security-observability core of the donation API: per-key rate "
            "limiting, suspicious pattern detection and a tamper-evident "
            "audit trail."
        ),
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.security = security

    # Middleware (last registered is outermost)
    app.middleware("http")(abuse_observation_middleware)
    app.middleware("http")(request_id_middleware)

    setup_exception_handlers(app)

    app.include_router(health_router)
    for router in routers:
        app.include_router(router)

    return app
