"""Consolidated store: one aggregate index document per session.

The index maps ``sensor_id -> readings`` ordered by timestamp. It is kept
in memory per session and snapshotted to
``<root>/consolidated/<session>.json`` every ``snapshot_interval`` appends.
Readings lost between an individual write and a snapshot are restored by
reconciliation.
"""

from __future__ import annotations

import bisect
import logging
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from pydantic import Field, ValidationError

from pysensync.exceptions import StorageReadError, StorageWriteError
from pysensync.models._base import SensyncBaseModel, UtcDatetime, utcnow
from pysensync.models.reading import Reading
from pysensync.storage._files import (
    KeyedLocks,
    atomic_write_json,
    bucket_name,
    read_json,
    retry_io,
    session_from_bucket,
)

_logger = logging.getLogger(__name__)

SessionIndex = dict[str, list[Reading]]
"""In-memory consolidated index: sensor id to readings sorted by timestamp."""


class ConsolidatedDocument(SensyncBaseModel):
    """On-disk shape of a consolidated index."""

    session_id: str | None = None
    updated_at: UtcDatetime = Field(default_factory=utcnow)
    sensors: dict[str, list[Reading]] = Field(default_factory=dict)


@dataclass
class _CachedIndex:
    sensors: SessionIndex = field(default_factory=dict)
    # Appended since the last durable snapshot.
    unsaved: dict[tuple[str, datetime], Reading] = field(default_factory=dict)


def _timestamp_of(reading: Reading) -> datetime:
    return reading.timestamp


def insert_sorted(readings: list[Reading], reading: Reading) -> bool:
    """Insert *reading* in timestamp order. Returns False if the timestamp is already present."""
    position = bisect.bisect_left(readings, reading.timestamp, key=_timestamp_of)
    if position < len(readings) and readings[position].timestamp == reading.timestamp:
        return False
    readings.insert(position, reading)
    return True


def copy_index(index: Mapping[str, Sequence[Reading]]) -> SessionIndex:
    """Deep, independent copy of an index (``raw_payload`` dicts included)."""
    return {sensor_id: [r.model_copy(deep=True) for r in readings] for sensor_id, readings in index.items()}


class ConsolidatedStore:
    """Per-session aggregate index with periodic durable snapshots.

    Parameters
    ----------
    root : str or Path
        Data directory; documents live under ``<root>/consolidated``.
    snapshot_interval : int
        Appends between durable snapshots. ``1`` writes through on every
        append.
    write_retries : int
        Attempts per snapshot before :class:`StorageWriteError` is raised.
    retry_delay : float
        Seconds between attempts.
    """

    def __init__(
        self,
        root: str | Path,
        *,
        snapshot_interval: int = 1,
        write_retries: int = 3,
        retry_delay: float = 0.1,
    ) -> None:
        if snapshot_interval < 1:
            raise ValueError("snapshot_interval must be >= 1")
        self._root = Path(root) / "consolidated"
        self._snapshot_interval = snapshot_interval
        self._write_retries = write_retries
        self._retry_delay = retry_delay
        self._locks = KeyedLocks()
        self._cache: dict[str | None, _CachedIndex] = {}

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, session_id: str | None) -> Path:
        return self._root / f"{bucket_name(session_id)}.json"

    def session_lock(self, session_id: str | None) -> threading.RLock:
        """Lock owning the session's index.

        The append path and the repair path both hold it, so only one of
        them mutates an index at a time.
        """
        return self._locks.get(session_id)

    # ------------------------------------------------------------------
    # Durable document
    # ------------------------------------------------------------------

    def _read_document(self, session_id: str | None) -> SessionIndex | None:
        path = self.path_for(session_id)
        try:
            raw = read_json(path)
        except FileNotFoundError:
            return None
        except ValueError as exc:
            raise StorageReadError(f"Corrupt consolidated index {path}: {exc}") from exc
        try:
            document = ConsolidatedDocument.model_validate(raw)
        except ValidationError as exc:
            raise StorageReadError(f"Corrupt consolidated index {path}: {exc}") from exc

        index: SessionIndex = {}
        for sensor_id, readings in document.sensors.items():
            ordered: list[Reading] = []
            for reading in readings:
                insert_sorted(ordered, reading)
            index[sensor_id] = ordered
        return index

    def _write_document(self, session_id: str | None, index: Mapping[str, Sequence[Reading]]) -> None:
        path = self.path_for(session_id)
        document = ConsolidatedDocument(
            session_id=session_id,
            sensors={sensor_id: list(readings) for sensor_id, readings in index.items()},
        ).to_document()
        try:
            retry_io(
                lambda: atomic_write_json(path, document),
                attempts=self._write_retries,
                delay=self._retry_delay,
                what=f"snapshot {path.name}",
            )
        except OSError as exc:
            raise StorageWriteError(
                f"Could not write consolidated index session={session_id}: {exc}",
                session_id=session_id,
                attempts=self._write_retries,
            ) from exc

    def _cached(self, session_id: str | None) -> _CachedIndex:
        cached = self._cache.get(session_id)
        if cached is not None:
            return cached
        try:
            sensors = self._read_document(session_id) or {}
        except StorageReadError:
            # Reconciliation rebuilds what the corrupt document held.
            _logger.error("Starting empty index for session=%s", session_id, exc_info=True)
            sensors = {}
        cached = _CachedIndex(sensors=sensors)
        self._cache[session_id] = cached
        return cached

    def _peek(self, session_id: str | None) -> SessionIndex:
        # Read path: never creates a cache entry.
        cached = self._cache.get(session_id)
        if cached is not None:
            return cached.sensors
        try:
            return self._read_document(session_id) or {}
        except StorageReadError:
            _logger.error("Unreadable index read as empty session=%s", session_id, exc_info=True)
            return {}

    def _snapshot(self, session_id: str | None, cached: _CachedIndex) -> None:
        self._write_document(session_id, cached.sensors)
        cached.unsaved.clear()
        _logger.debug("Snapshot session=%s sensors=%d", session_id, len(cached.sensors))

    # ------------------------------------------------------------------
    # Append path
    # ------------------------------------------------------------------

    def append(self, session_id: str | None, sensor_id: str, reading: Reading) -> bool:
        """Insert *reading* under *sensor_id* in timestamp order.

        Appending a timestamp already present for the sensor is a no-op and
        returns False; readings are immutable so the stored one is kept.

        Raises
        ------
        StorageWriteError
            If a due snapshot cannot be written. The reading stays in the
            in-memory index and is persisted by the next snapshot.
        """
        with self.session_lock(session_id):
            return self._append_locked(session_id, sensor_id, reading)

    def try_append(self, session_id: str | None, sensor_id: str, reading: Reading) -> bool | None:
        """Like :meth:`append`, but return ``None`` at once if the session lock is held elsewhere."""
        lock = self.session_lock(session_id)
        if not lock.acquire(blocking=False):
            return None
        try:
            return self._append_locked(session_id, sensor_id, reading)
        finally:
            lock.release()

    def _append_locked(self, session_id: str | None, sensor_id: str, reading: Reading) -> bool:
        cached = self._cached(session_id)
        readings = cached.sensors.setdefault(sensor_id, [])
        if not insert_sorted(readings, reading):
            _logger.debug(
                "Duplicate append ignored session=%s sensor=%s ts=%s",
                session_id,
                sensor_id,
                reading.timestamp.isoformat(),
            )
            return False
        cached.unsaved[(sensor_id, reading.timestamp)] = reading
        if len(cached.unsaved) >= self._snapshot_interval:
            self._snapshot(session_id, cached)
        return True

    def flush(self, session_id: str | None) -> None:
        """Snapshot pending appends of one session (``None`` is the default bucket)."""
        with self.session_lock(session_id):
            cached = self._cache.get(session_id)
            if cached is not None and cached.unsaved:
                self._snapshot(session_id, cached)

    def flush_all(self) -> None:
        """Snapshot pending appends of every cached session."""
        for session_id in list(self._cache):
            self.flush(session_id)

    def evict(self, session_id: str | None) -> None:
        """Snapshot the session and drop its index from memory.

        Later reads load the durable document without caching it again.

        Raises
        ------
        StorageWriteError
            If pending appends cannot be written; the index stays cached.
        """
        with self.session_lock(session_id):
            self.flush(session_id)
            if self._cache.pop(session_id, None) is not None:
                _logger.debug("Evicted index session=%s", session_id)

    @property
    def cached_session_ids(self) -> list[str | None]:
        """Sessions whose index is currently held in memory."""
        return list(self._cache)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_all(self, session_id: str | None, sensor_id: str) -> list[Reading]:
        """Readings of one sensor, ordered by timestamp (independent copy)."""
        with self.session_lock(session_id):
            readings = self._peek(session_id).get(sensor_id, [])
            return [r.model_copy(deep=True) for r in readings]

    def get_session(self, session_id: str | None) -> SessionIndex:
        """Deep copy of the whole session index; mutating it never affects the store."""
        with self.session_lock(session_id):
            return copy_index(self._peek(session_id))

    def exists(self, session_id: str | None) -> bool:
        """Whether a durable index document exists for the session."""
        return self.path_for(session_id).is_file()

    def session_ids(self) -> list[str | None]:
        """Sessions with a durable index document."""
        if not self._root.is_dir():
            return []
        return [session_from_bucket(path.stem) for path in sorted(self._root.glob("*.json"))]

    # ------------------------------------------------------------------
    # Repair path
    # ------------------------------------------------------------------

    def load_durable(self, session_id: str | None) -> SessionIndex | None:
        """Index as it stands on disk, plus appends not yet snapshotted.

        Returns ``None`` when no durable document exists and nothing is
        pending, i.e. the session has no consolidated index at all.

        Raises
        ------
        StorageReadError
            If the durable document exists but cannot be decoded.
        """
        with self.session_lock(session_id):
            durable = self._read_document(session_id)
            cached = self._cache.get(session_id)
            unsaved = list(cached.unsaved.items()) if cached is not None else []
            if durable is None and not unsaved:
                return None
            index = durable or {}
            for (sensor_id, _timestamp), reading in unsaved:
                insert_sorted(index.setdefault(sensor_id, []), reading)
            return index

    def commit(self, session_id: str | None, index: Mapping[str, Sequence[Reading]]) -> None:
        """Replace the session index with *index* in one durable write.

        Raises
        ------
        StorageWriteError
            If the document cannot be written; the previous index is kept.
        """
        with self.session_lock(session_id):
            sensors: SessionIndex = {}
            for sensor_id, readings in index.items():
                ordered: list[Reading] = []
                for reading in readings:
                    insert_sorted(ordered, reading)
                sensors[sensor_id] = ordered
            self._write_document(session_id, sensors)
            if session_id in self._cache:
                self._cache[session_id] = _CachedIndex(sensors=sensors)

    def delete_session(self, session_id: str | None) -> None:
        """Drop the session's index from memory and disk."""
        with self.session_lock(session_id):
            self._cache.pop(session_id, None)
            try:
                self.path_for(session_id).unlink()
            except FileNotFoundError:
                pass
