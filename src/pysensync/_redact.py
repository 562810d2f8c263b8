"""Masking and size bounds for payloads that end up in log records.

Device payloads are logged at DEBUG level and in write-failure errors, and
broker settings may carry credentials. Zigbee bridges also publish network
keys on their info topics. :func:`redact_for_log` masks credential-like keys
and shortens large values (image blobs, firmware dumps) first.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

_MASK = "<redacted>"

_CREDENTIAL_KEYS: frozenset[str] = frozenset(
    {
        "authorization",
        "cookie",
        "network_key",
        "pan_id",
        "passwd",
        "secret",
        "username",
    }
)

# Matched as suffixes too, so "mqtt_password" or "access_token" are masked.
_CREDENTIAL_SUFFIXES: tuple[str, ...] = ("password", "token", "api_key", "apikey")


def _is_credential(key: str) -> bool:
    lowered = key.lower()
    return lowered in _CREDENTIAL_KEYS or lowered.endswith(_CREDENTIAL_SUFFIXES)


def _shorten_text(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return f"{text[:limit]}…<truncated {len(text)} chars>"


def _shorten_bytes(data: bytes | bytearray, limit: int) -> str:
    # Short UTF-8 payloads are shown as text, everything else by size only.
    if len(data) <= limit:
        try:
            return bytes(data).decode("utf-8")
        except UnicodeDecodeError:
            pass
    return f"<bytes:{len(data)}b>"


def redact_for_log(value: Any, *, max_string: int = 256, max_items: int = 50, _depth: int = 0) -> Any:
    """Return a copy of *value* that is safe and small enough to log."""
    if _depth > 10:
        return "<max-depth>"
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return _shorten_text(value, max_string)
    if isinstance(value, (bytes, bytearray)):
        return _shorten_bytes(value, max_string)

    def child(item: Any) -> Any:
        return redact_for_log(item, max_string=max_string, max_items=max_items, _depth=_depth + 1)

    if isinstance(value, Mapping):
        entries = list(value.items())
        out = {str(k): _MASK if _is_credential(str(k)) else child(v) for k, v in entries[:max_items]}
        if len(entries) > max_items:
            out["…"] = f"<{len(entries) - max_items} more keys>"
        return out

    if isinstance(value, Sequence):
        items = list(value)
        out_items = [child(item) for item in items[:max_items]]
        if len(items) > max_items:
            out_items.append(f"<{len(items) - max_items} more items>")
        return out_items

    return repr(value)
