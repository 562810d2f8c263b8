"""Payload normalization.

Turns heterogeneous device payloads into canonical :class:`Reading` values.
The polarity convention (``1`` = active/open, ``0`` = inactive/closed) is
decided here once; nothing downstream re-interprets ``value``.
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Callable, Mapping
from datetime import datetime
from enum import Enum
from typing import Any, Final, Literal

from pysensync._redact import redact_for_log
from pysensync.models._base import utcnow
from pysensync.models.reading import DeviceClass, Reading

_logger = logging.getLogger(__name__)


class _Skip(Enum):
    SKIP = "skip"


SKIP: Final = _Skip.SKIP
"""Returned by :func:`normalize` for system/bridge topics."""

NormalizeResult = Reading | Literal[_Skip.SKIP]

_TRUE_STRINGS: frozenset[str] = frozenset({"true", "open"})
_FALSE_STRINGS: frozenset[str] = frozenset({"false", "closed"})
_MOTION_KEYS: tuple[str, ...] = ("occupancy", "motion", "presence")
_BATTERY_KEYS: tuple[str, ...] = ("battery", "battery_level")
_LINK_QUALITY_KEYS: tuple[str, ...] = ("linkquality", "link_quality")


def safe_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool) or value == "" or value == "--":
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def safe_int(value: Any) -> int | None:
    parsed = safe_float(value)
    if parsed is None:
        return None
    return int(parsed)


def decode_payload(payload: bytes | bytearray | str | Any) -> Any:
    """Decode a broker payload as JSON, wrapping anything else as ``{"raw": text}``."""
    if isinstance(payload, (bytes, bytearray)):
        text = bytes(payload).decode("utf-8", errors="replace")
    elif isinstance(payload, str):
        text = payload
    else:
        return payload
    try:
        return json.loads(text)
    except ValueError:
        return {"raw": text}


def is_system_topic(topic: str) -> bool:
    """Bridge and broker housekeeping topics never carry sensor readings."""
    if topic.startswith("$SYS/"):
        return True
    return "bridge" in topic.split("/")


def sensor_id_from_topic(topic: str) -> str:
    """Derive a sensor id from a device topic by dropping the root level.

    ``zigbee2mqtt/door`` -> ``door``; ``zigbee2mqtt/kitchen/door`` ->
    ``kitchen/door``. Single-level topics are used as-is.
    """
    root, sep, rest = topic.partition("/")
    return rest if sep and rest else root


# ---------------------------------------------------------------------------
# Value decision table
#
# Each rule inspects one payload shape and returns 0/1, or None to defer to
# the next rule. Rules are evaluated strictly in order; the first match wins.
# ---------------------------------------------------------------------------

_Rule = Callable[[Mapping[str, Any], DeviceClass], int | None]


def _contact_bool(payload: Mapping[str, Any], _device_class: DeviceClass) -> int | None:
    contact = payload.get("contact")
    if isinstance(contact, bool):
        return 1 if contact else 0
    return None


def _contact_string(payload: Mapping[str, Any], _device_class: DeviceClass) -> int | None:
    contact = payload.get("contact")
    if not isinstance(contact, str):
        return None
    text = contact.strip().lower()
    if text in _TRUE_STRINGS:
        return 1
    if text in _FALSE_STRINGS:
        return 0
    return None


def _contact_numeric(payload: Mapping[str, Any], _device_class: DeviceClass) -> int | None:
    # Wire value 0 means "open" upstream, hence the inversion.
    contact = payload.get("contact")
    if isinstance(contact, bool):
        return None
    code = safe_float(contact)
    if code == 0:
        return 1
    if code == 1:
        return 0
    return None


def _motion_flags(payload: Mapping[str, Any], device_class: DeviceClass) -> int | None:
    if device_class != DeviceClass.MOTION:
        return None
    for key in _MOTION_KEYS:
        flag = payload.get(key)
        if isinstance(flag, bool):
            return 1 if flag else 0
    return None


def _state_field(payload: Mapping[str, Any], device_class: DeviceClass) -> int | None:
    state = payload.get("state")
    if isinstance(state, str):
        text = state.strip().upper()
        if text == "ON":
            return 1
        if text == "OFF":
            return 0
        return None
    if isinstance(state, Mapping):
        return _resolve_value(state, device_class)
    return None


_VALUE_RULES: tuple[_Rule, ...] = (
    _contact_bool,
    _contact_string,
    _contact_numeric,
    _motion_flags,
    _state_field,
)


def _resolve_value(payload: Mapping[str, Any], device_class: DeviceClass) -> int | None:
    for rule in _VALUE_RULES:
        value = rule(payload, device_class)
        if value is not None:
            return value
    return None


def _first_int(payload: Mapping[str, Any], keys: tuple[str, ...]) -> int:
    for key in keys:
        parsed = safe_int(payload.get(key))
        if parsed is not None:
            return parsed
    return 0


def normalize(
    topic: str,
    raw_payload: Any,
    device_class: DeviceClass = DeviceClass.GENERIC,
    *,
    received_at: datetime | None = None,
    sensor_id: str | None = None,
) -> NormalizeResult:
    """Normalize one broker message into a :class:`Reading`.

    Parameters
    ----------
    topic : str
        Topic the message arrived on.
    raw_payload : bytes, str or decoded JSON
        Message body. Non-JSON text is wrapped as ``{"raw": text}``.
    device_class : DeviceClass
        Normalization profile.
    received_at : datetime or None
        Receipt instant; defaults to now.
    sensor_id : str or None
        Explicit sensor id; derived from the topic when omitted.

    Returns
    -------
    Reading or SKIP
        ``SKIP`` for system/bridge topics. Malformed payloads still produce
        a reading (value ``0``) and log a warning.
    """
    if is_system_topic(topic):
        _logger.debug("Skipping system topic=%s", topic)
        return SKIP

    payload = decode_payload(raw_payload)
    fields: Mapping[str, Any] = payload if isinstance(payload, Mapping) else {}

    value = _resolve_value(fields, device_class)
    if value is None:
        _logger.warning(
            "Ambiguous payload on topic=%s class=%s, defaulting value to 0: %s",
            topic,
            device_class.value,
            redact_for_log(payload),
        )
        value = 0

    return Reading(
        sensor_id=sensor_id or sensor_id_from_topic(topic),
        session_id=None,
        timestamp=received_at or utcnow(),
        value=value,
        battery=_first_int(fields, _BATTERY_KEYS),
        link_quality=_first_int(fields, _LINK_QUALITY_KEYS),
        raw_payload=payload,
        topic=topic,
        device_class=device_class,
    )
