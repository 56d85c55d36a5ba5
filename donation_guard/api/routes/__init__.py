from __future__ import annotations

from donation_guard.api.routes.health import router as health_router

__all__ = ["health_router"]
