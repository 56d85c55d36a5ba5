"""Masking of sensitive values before audit details are persisted.

Unlike log redaction (which drops values entirely), audit records keep a
short prefix of API keys so operators can tell keys apart without the record
ever holding a usable secret.
"""

from __future__ import annotations

import re
from typing import Any, Mapping

MASK = "***"

# Compared after lowercasing and stripping "-" / "_" so apiKey, api_key and
# X-API-Key all match
_SECRET_KEYS = {
    "password",
    "passphrase",
    "secret",
    "secretkey",
    "clientsecret",
    "privatekey",
    "seed",
    "mnemonic",
    "token",
    "accesstoken",
    "refreshtoken",
    "authorization",
    "cookie",
}
_API_KEY_KEYS = {"apikey", "xapikey"}

_API_KEY_PREFIX_CHARS = 4
_MAX_DEPTH = 8


def _normalize_key(key: object) -> str:
    return re.sub(r"[-_\s]", "", str(key)).lower()


def mask_api_key(value: object) -> str:
    """Keep a short prefix of an API key and mask the rest.

    Examples:
        >>> mask_api_key("sk_live_1234567890abcdef")
        'sk_l***'
        >>> mask_api_key("abc")
        '***'
    """
    text = str(value)
    if len(text) <= _API_KEY_PREFIX_CHARS * 2:
        return MASK
    return f"{text[:_API_KEY_PREFIX_CHARS]}{MASK}"


def sanitize_details(value: Any, *, _depth: int = 0) -> Any:
    """Return a copy of ``value`` with sensitive mapping entries masked.

    Mappings are walked recursively (lists and tuples included). Values are
    otherwise returned untouched; serialization happens afterwards.
    """
    if _depth > _MAX_DEPTH:
        return MASK

    if isinstance(value, Mapping):
        sanitized: dict[str, Any] = {}
        for key, item in value.items():
            normalized = _normalize_key(key)
            if normalized in _API_KEY_KEYS and item is not None:
                sanitized[str(key)] = mask_api_key(item)
            elif normalized in _SECRET_KEYS and item is not None:
                sanitized[str(key)] = MASK
            else:
                sanitized[str(key)] = sanitize_details(item, _depth=_depth + 1)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize_details(item, _depth=_depth + 1) for item in value]
    return value
