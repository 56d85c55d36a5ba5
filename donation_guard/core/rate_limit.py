"""Rate limiting dependency for FastAPI routes.

This module wires the sliding-window limiter into the HTTP layer.

Design goals:
- Minimal coupling: API routes depend on a dependency function only.
- Swap-friendly: the limiter lives on ``app.state.security`` and can be
  replaced behind ``AbstractRateLimiter``.
- Quota is per API key; a request without a key is rejected before any
  counter is touched.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Annotated

from fastapi import Header, Request, Response

from donation_guard.adapters.rate_limit.base import RateLimitResult
from donation_guard.core.errors import AuthenticationAppError, RateLimitAppError

logger = logging.getLogger(__name__)


def _hash_limiter_key(key: str) -> str:
    """Hash the rate limit key for logging without exposing secrets."""
    return hashlib.sha256(key.encode()).hexdigest()[:16]


def _quota_headers(result: RateLimitResult) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset_at),
    }


async def enforce_rate_limit(
    request: Request,
    response: Response,
    x_api_key: Annotated[str | None, Header(alias="X-API-Key")] = None,
) -> None:
    """FastAPI dependency enforcing the per-key request quota.

    Consumes one unit from the caller's budget. Allowed responses carry the
    ``X-RateLimit-*`` headers; denied requests never touch the counter.

    Args:
        request: FastAPI request.
        response: Response the quota headers are attached to.
        x_api_key: API key from X-API-Key header.

    Raises:
        AuthenticationAppError: 401 when the API key header is missing.
        RateLimitAppError: 429 when the quota is exhausted.
    """

    core = request.app.state.security
    cfg = core.settings.rate_limit
    if not cfg.enabled:
        return

    api_key = (x_api_key or "").strip()
    if not api_key:
        logger.warning(
            "rate_limit.missing_api_key",
            extra={"path": request.url.path, "method": request.method},
        )
        raise AuthenticationAppError(
            code="missing_api_key",
            message="API key required",
            details={"hint": "Send the key in the X-API-Key header"},
        )

    key_hash = _hash_limiter_key(api_key)
    result = core.rate_limiter.consume(api_key)

    if result.allowed:
        logger.info(
            "rate_limit.allowed",
            extra={
                "key_hash": key_hash,
                "limit": result.limit,
                "remaining": result.remaining,
                "window_s": cfg.window_seconds,
            },
        )
        if cfg.include_headers:
            response.headers.update(_quota_headers(result))
        return

    retry_after = result.retry_after_seconds or 0
    logger.warning(
        "rate_limit.exceeded",
        extra={
            "key_hash": key_hash,
            "limit": result.limit,
            "path": request.url.path,
            "method": request.method,
            "window_s": cfg.window_seconds,
            "retry_after_s": retry_after,
        },
    )

    headers: dict[str, str] = {}
    if cfg.include_headers:
        headers = _quota_headers(result)
        headers["Retry-After"] = str(retry_after)

    details = {"retry_after": retry_after}
    if not core.settings.is_production:
        details["limit"] = result.limit
        details["reset_at"] = str(result.reset_at)

    raise RateLimitAppError(
        code="rate_limit_exceeded",
        message="Too many requests, please try again later",
        details=details,
        headers=headers or None,
    )
