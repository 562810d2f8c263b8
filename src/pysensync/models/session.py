"""Capture session model."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import Field, field_validator

from pysensync.models._base import SensyncBaseModel, UtcDatetime, utcnow


class SessionStatus(StrEnum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"


class Session(SensyncBaseModel):
    """The unit of synchronized capture.

    ``end_time`` is set as soon as completion starts; the status only moves
    to ``completed`` after the final reconciliation pass has succeeded.
    """

    id: str
    status: SessionStatus = SessionStatus.PENDING
    sensor_ids: frozenset[str]
    name: str | None = None
    created_at: UtcDatetime = Field(default_factory=utcnow)
    start_time: UtcDatetime | None = None
    end_time: UtcDatetime | None = None

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        session_id = value.strip()
        if not session_id:
            raise ValueError("session id must be non-empty")
        return session_id

    @field_validator("sensor_ids")
    @classmethod
    def _require_sensors(cls, value: frozenset[str]) -> frozenset[str]:
        cleaned = frozenset(s.strip() for s in value if s and s.strip())
        if not cleaned:
            raise ValueError("a session needs at least one sensor")
        return cleaned

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    @property
    def is_completing(self) -> bool:
        """Active but frozen: attribution closed, final reconcile pending."""
        return self.status == SessionStatus.ACTIVE and self.end_time is not None

    def covers(self, at: datetime) -> bool:
        """Whether a reading received at *at* is attributed to this session.

        Attribution closes as soon as ``end_time`` is set.
        """
        if not self.is_active or self.start_time is None or self.end_time is not None:
            return False
        return at >= self.start_time
