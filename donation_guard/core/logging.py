"""Structured logging for the security core.

Every record leaves the process as one JSON object carrying the request id
of the current request (when there is one) and every ``extra`` field, with
credential-like keys redacted at any nesting depth. ``log_event`` is the
(scope, message, metadata) sink the detector and the audit trail publish to;
events land on ``donation_guard.<scope>`` loggers.
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from logging import LogRecord
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping, Protocol

from donation_guard.core.config import LogSettings, settings

EVENT_LOGGER_PREFIX = "donation_guard"
REDACTED = "[REDACTED]"

_request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)

# Compared after lowercasing and dropping "-" and "_", so "X-Api-Key",
# "api_key" and "apikey" all match "apikey"
SENSITIVE_KEYS: frozenset[str] = frozenset(
    {
        "apikey",
        "xapikey",
        "authorization",
        "token",
        "password",
        "secret",
        "secretkey",
        "privatekey",
        "cookie",
        "setcookie",
        "databaseurl",
    }
)

# Attributes every LogRecord has; anything else on a record came from ``extra``
_RECORD_ATTRS: frozenset[str] = frozenset(
    vars(LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "taskName"}


class EventSink(Protocol):
    """Callable receiving structured events from the security core."""

    def __call__(
        self,
        scope: str,
        message: str,
        metadata: Mapping[str, Any] | None = None,
        *,
        level: int = logging.INFO,
    ) -> None: ...


def set_request_id(request_id: str | None) -> None:
    _request_id_var.set(request_id)


def get_request_id() -> str | None:
    return _request_id_var.get()


def clear_request_id() -> None:
    _request_id_var.set(None)


def _normalize_key(key: object) -> str:
    return str(key).lower().replace("-", "").replace("_", "")


def redact(value: Any, sensitive_keys: frozenset[str] = SENSITIVE_KEYS) -> Any:
    """Replace values stored under sensitive keys, recursing into containers."""
    if isinstance(value, Mapping):
        return {
            key: REDACTED if _normalize_key(key) in sensitive_keys else redact(item, sensitive_keys)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return type(value)(redact(item, sensitive_keys) for item in value)
    return value


def _record_extras(record: LogRecord) -> Iterator[tuple[str, Any]]:
    for key, value in vars(record).items():
        if key not in _RECORD_ATTRS and not key.startswith("_"):
            yield key, value


class RequestIdFilter(logging.Filter):
    """Attach the current request id unless the record already has one."""

    def filter(self, record: LogRecord) -> bool:  # noqa: D401
        if getattr(record, "request_id", None) is None:
            request_id = get_request_id()
            if request_id:
                record.request_id = request_id
        return True


class SensitiveDataFilter(logging.Filter):
    """Redact sensitive ``extra`` fields in place, for every formatter."""

    def __init__(self, sensitive_keys: Iterable[str] | None = None) -> None:
        super().__init__()
        keys = SENSITIVE_KEYS if sensitive_keys is None else sensitive_keys
        self.sensitive_keys = frozenset(_normalize_key(key) for key in keys)

    def filter(self, record: LogRecord) -> bool:  # noqa: D401
        for key, value in list(_record_extras(record)):
            if _normalize_key(key) in self.sensitive_keys:
                setattr(record, key, REDACTED)
            else:
                setattr(record, key, redact(value, self.sensitive_keys))
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per record: fixed header fields, then the extras."""

    def __init__(self, *, ensure_ascii: bool = True) -> None:
        super().__init__()
        self.ensure_ascii = ensure_ascii

    def format(self, record: LogRecord) -> str:  # noqa: D401
        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        request_id = getattr(record, "request_id", None) or get_request_id()
        if request_id:
            payload["request_id"] = request_id

        payload.update(redact(dict(_record_extras(record))))

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=self.ensure_ascii)


def log_event(
    scope: str,
    message: str,
    metadata: Mapping[str, Any] | None = None,
    *,
    level: int = logging.INFO,
) -> None:
    """Publish a structured event on the ``donation_guard.<scope>`` logger.

    ``logging`` refuses ``extra`` keys that shadow LogRecord attributes, so
    such metadata keys are published with a ``meta_`` prefix.

    Args:
        scope: Logical event source (e.g. ``suspicious_pattern``, ``audit``).
        message: Short human-readable event description.
        metadata: Structured fields attached to the record.
        level: Logging level for the event.
    """
    extra = {
        (f"meta_{key}" if key in _RECORD_ATTRS else key): value
        for key, value in (metadata or {}).items()
    }
    extra["scope"] = scope
    logging.getLogger(f"{EVENT_LOGGER_PREFIX}.{scope}").log(level, message, extra=extra)


def _build_handler(cfg: LogSettings) -> logging.Handler:
    if cfg.output.lower() != "file":
        return logging.StreamHandler(sys.stdout)

    path = Path(cfg.file_path or "logs/donation_guard.log")
    path.parent.mkdir(parents=True, exist_ok=True)
    if cfg.max_bytes:
        return RotatingFileHandler(
            path, maxBytes=cfg.max_bytes, backupCount=cfg.backup_count, encoding="utf-8"
        )
    return logging.FileHandler(path, encoding="utf-8")


def configure_logging(log_settings: LogSettings | None = None) -> None:
    """Route the root logger through one redacting handler.

    Args:
        log_settings: Defaults to the global settings.
    """
    cfg = log_settings or settings.log

    handler = _build_handler(cfg)
    handler.addFilter(RequestIdFilter())
    handler.addFilter(SensitiveDataFilter())
    if cfg.format.lower() == "plain":
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    else:
        handler.setFormatter(JsonFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, cfg.level.upper(), logging.INFO))

    # uvicorn installs its own handlers
    logging.getLogger("uvicorn").propagate = False
    logging.getLogger("uvicorn.access").propagate = False
