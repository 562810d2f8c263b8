"""Base model shared by all persisted pysensync documents.

Every document model inherits from :class:`SensyncBaseModel` which provides:

* ``alias_generator=to_camel`` so the on-disk JSON uses camelCase keys
  (``sensorId``, ``linkQuality``) while Python code uses snake_case.
* ``frozen=True``: documents are values, never mutated in place.

Timestamps are always timezone-aware UTC; :data:`UtcDatetime` coerces
naive datetimes and ISO-8601 strings on the way in.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict
from pydantic.alias_generators import to_camel


def ensure_utc(value: Any) -> Any:
    """Return *value* as an aware UTC datetime when it is a datetime or ISO string."""
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        value = datetime.fromisoformat(text)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)
    return value


UtcDatetime = Annotated[datetime, BeforeValidator(ensure_utc)]
"""Annotated type that normalizes datetimes to aware UTC."""


def utcnow() -> datetime:
    return datetime.now(UTC)


class SensyncBaseModel(BaseModel):
    """Base for persisted documents (camelCase on disk, frozen in memory)."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    def to_document(self) -> dict[str, Any]:
        """JSON-ready dict using camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)
