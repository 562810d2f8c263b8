"""Normalized sensor reading and subscription models."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import Field, field_validator

from pysensync.models._base import SensyncBaseModel, UtcDatetime
from pysensync.topics import validate_topic_filter


class DeviceClass(StrEnum):
    """Normalization profile applied to a device's payloads."""

    CONTACT = "contact"
    MOTION = "motion"
    GENERIC = "generic"


class Reading(SensyncBaseModel):
    """One normalized sensor observation.

    Parameters
    ----------
    sensor_id : str
        Stable device identifier (IEEE address or friendly name).
    session_id : str or None
        Session the reading is attributed to, ``None`` for the
        session-less default bucket.
    timestamp : datetime
        Receipt instant (aware UTC). Unique per ``(session_id, sensor_id)``.
    value : int
        Canonical polarity: ``0`` inactive/closed, ``1`` active/open.
    battery : int
        Battery percentage (0-100), ``0`` when not reported.
    link_quality : int
        Device-reported link quality, ``0`` when not reported.
    raw_payload : Any
        Original message, ``{"raw": <text>}`` for non-JSON payloads.
    topic : str
        Topic the message arrived on.
    device_class : DeviceClass
        Profile used to normalize the payload.
    """

    sensor_id: str
    session_id: str | None = None
    timestamp: UtcDatetime
    value: int = Field(default=0, ge=0, le=1)
    battery: int = 0
    link_quality: int = 0
    raw_payload: Any = Field(default_factory=dict)
    topic: str = ""
    device_class: DeviceClass = DeviceClass.GENERIC

    @field_validator("sensor_id")
    @classmethod
    def _normalize_sensor_id(cls, value: str) -> str:
        sensor_id = value.strip()
        if not sensor_id:
            raise ValueError("sensor_id must be non-empty")
        return sensor_id

    @field_validator("battery")
    @classmethod
    def _clamp_battery(cls, value: int) -> int:
        return max(0, min(100, value))


class SensorSubscription(SensyncBaseModel):
    """Binds a topic filter to a normalization profile.

    ``sensor_id`` pins every message matched by the filter to one sensor.
    When unset the id is derived from the topic.
    """

    topic_filter: str
    device_class: DeviceClass = DeviceClass.GENERIC
    sensor_id: str | None = None

    @field_validator("topic_filter")
    @classmethod
    def _validate_filter(cls, value: str) -> str:
        validate_topic_filter(value)
        return value
