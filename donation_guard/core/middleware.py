"""HTTP middleware for request correlation and abuse observation.

``request_id_middleware``:
- Accepts incoming X-Request-ID header or generates a UUID
- Stores request_id in contextvars for access throughout the request lifecycle
- Injects request_id and the total duration into response headers
- Clears context after request completion to prevent context leaks

``abuse_observation_middleware``:
- Feeds every request/response pair to the AbuseObserver
- Tags responses of flagged clients with ``X-Abuse-Signal: flagged``; the
  flag's audit write runs in the background
- Never blocks or alters a response otherwise

Usage (last registered runs first):
    app.middleware("http")(abuse_observation_middleware)
    app.middleware("http")(request_id_middleware)
"""

from __future__ import annotations

import json
import time
import uuid
from typing import Any

from fastapi import Request, Response

from donation_guard.core.logging import clear_request_id, get_request_id, set_request_id
from donation_guard.detection.observer import ABUSE_SIGNAL_HEADER, RequestContext, ResponseOutcome


async def request_id_middleware(request: Request, call_next) -> Response:
    """Propagate a correlation id through the request lifecycle.

    If the client provides the configured request id header (X-Request-ID by
    default), that value is used; otherwise a new UUID is generated.

    Example:
        >>> # Headers: {"X-Request-ID": "req-abc-123"}
        >>> # Response includes:
        >>> # {"X-Request-ID": "req-abc-123", "X-Request-Duration-ms": "45.67"}
    """

    header_name = request.app.state.security.settings.log.request_id_header
    request_id = request.headers.get(header_name) or str(uuid.uuid4())
    set_request_id(request_id)
    start = time.perf_counter()
    try:
        response: Response = await call_next(request)
    finally:
        clear_request_id()

    duration_ms = (time.perf_counter() - start) * 1000
    response.headers[header_name] = request_id
    response.headers.setdefault("X-Request-Duration-ms", f"{duration_ms:.2f}")
    return response


async def _read_json_body(request: Request) -> Any:
    """Decode the JSON body, or None when it is absent or malformed."""
    if request.method not in ("POST", "PUT", "PATCH"):
        return None
    if "json" not in request.headers.get("content-type", ""):
        return None
    try:
        raw = await request.body()
        return json.loads(raw) if raw else None
    except ValueError:
        return None


async def abuse_observation_middleware(request: Request, call_next) -> Response:
    """Observe the request and its outcome for suspicious activity."""

    core = request.app.state.security
    if not core.settings.abuse.enabled:
        return await call_next(request)

    observer = core.abuse_observer
    ctx = RequestContext.from_body(
        identifier=request.client.host if request.client else None,
        method=request.method,
        path=request.url.path,
        body=await _read_json_body(request),
        request_id=get_request_id(),
        user_agent=request.headers.get("user-agent"),
    )

    observer.observe_request(ctx)
    flagged = observer.is_flagged(ctx.identifier)
    if flagged:
        observer.schedule_flag(ctx)

    try:
        response: Response = await call_next(request)
    except Exception:
        # Unhandled errors are rendered outside this middleware
        observer.observe_response(ctx, ResponseOutcome(status_code=500, error_code="internal_server_error"))
        raise

    observer.observe_response(
        ctx,
        ResponseOutcome(
            status_code=response.status_code,
            error_code=getattr(request.state, "error_code", None),
        ),
    )
    if flagged:
        response.headers[ABUSE_SIGNAL_HEADER] = "flagged"
    return response
