"""Per-reading store: one addressable JSON record per reading.

Layout::

    <root>/readings/<session>/<sensor>/<YYYYmmddTHHMMSSffffffZ>.json

Session and sensor components are percent-encoded; readings without a
session go to the ``_unassigned`` bucket. Bucketing by session then sensor
keeps every directory small and lookups a direct path computation.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Iterator
from datetime import datetime
from pathlib import Path

from pydantic import ValidationError

from pysensync.exceptions import StorageReadError, StorageWriteError
from pysensync.models._base import ensure_utc
from pysensync.models.reading import Reading
from pysensync.storage._files import (
    KeyedLocks,
    atomic_write_json,
    bucket_name,
    decode_component,
    encode_component,
    parse_timestamp_key,
    read_json,
    retry_io,
    session_from_bucket,
    timestamp_key,
)

_logger = logging.getLogger(__name__)

_SUFFIX = ".json"


class PerReadingStore:
    """Durable, individually addressable reading records.

    Writes are atomic (temp file + rename) and serialized per
    ``(session, sensor)`` key. Different sensors never contend.
    """

    def __init__(self, root: str | Path, *, write_retries: int = 3, retry_delay: float = 0.1) -> None:
        self._root = Path(root) / "readings"
        self._write_retries = write_retries
        self._retry_delay = retry_delay
        self._locks = KeyedLocks()

    @property
    def root(self) -> Path:
        return self._root

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def _session_dir(self, session_id: str | None) -> Path:
        return self._root / bucket_name(session_id)

    def _sensor_dir(self, session_id: str | None, sensor_id: str) -> Path:
        return self._session_dir(session_id) / encode_component(sensor_id)

    def path_for(self, session_id: str | None, sensor_id: str, timestamp: datetime) -> Path:
        """Filesystem location of a reading record."""
        ts = ensure_utc(timestamp)
        return self._sensor_dir(session_id, sensor_id) / f"{timestamp_key(ts)}{_SUFFIX}"

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def put(self, reading: Reading) -> None:
        """Persist *reading* atomically.

        Raises
        ------
        StorageWriteError
            If the record cannot be written after all retry attempts.
        """
        path = self.path_for(reading.session_id, reading.sensor_id, reading.timestamp)
        document = reading.to_document()
        with self._locks.hold((reading.session_id, reading.sensor_id)):
            try:
                retry_io(
                    lambda: atomic_write_json(path, document),
                    attempts=self._write_retries,
                    delay=self._retry_delay,
                    what=f"put {path.name} sensor={reading.sensor_id}",
                )
            except OSError as exc:
                raise StorageWriteError(
                    f"Could not write reading sensor={reading.sensor_id} "
                    f"session={reading.session_id} ts={reading.timestamp.isoformat()}: {exc}",
                    session_id=reading.session_id,
                    sensor_id=reading.sensor_id,
                    timestamp=reading.timestamp,
                    attempts=self._write_retries,
                ) from exc

    def delete(self, session_id: str | None, sensor_id: str, timestamp: datetime) -> bool:
        """Remove one record. Returns False if it did not exist."""
        path = self.path_for(session_id, sensor_id, timestamp)
        with self._locks.hold((session_id, sensor_id)):
            try:
                path.unlink()
            except FileNotFoundError:
                return False
        return True

    def delete_session(self, session_id: str | None) -> None:
        """Remove every record of a session."""
        shutil.rmtree(self._session_dir(session_id), ignore_errors=True)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def exists(self, session_id: str | None, sensor_id: str, timestamp: datetime) -> bool:
        return self.path_for(session_id, sensor_id, timestamp).is_file()

    def get(self, session_id: str | None, sensor_id: str, timestamp: datetime) -> Reading | None:
        """Load one reading, or ``None`` if no record exists.

        Raises
        ------
        StorageReadError
            If the record exists but cannot be decoded.
        """
        path = self.path_for(session_id, sensor_id, timestamp)
        try:
            return Reading.model_validate(read_json(path))
        except FileNotFoundError:
            return None
        except (ValueError, ValidationError) as exc:
            raise StorageReadError(f"Corrupt reading record {path}: {exc}") from exc

    def iter_keys(self, session_id: str | None) -> Iterator[tuple[str, datetime]]:
        """Yield ``(sensor_id, timestamp)`` for every record of a session.

        Keys come from file names, so this never opens a record.
        """
        session_dir = self._session_dir(session_id)
        if not session_dir.is_dir():
            return
        for sensor_dir in sorted(session_dir.iterdir()):
            if not sensor_dir.is_dir():
                continue
            sensor_id = decode_component(sensor_dir.name)
            for record in sorted(sensor_dir.glob(f"*{_SUFFIX}")):
                if record.name.startswith("."):
                    continue
                try:
                    yield sensor_id, parse_timestamp_key(record.stem)
                except ValueError:
                    _logger.warning("Ignoring unexpected file in reading store: %s", record)

    def iter_readings(self, session_id: str | None) -> Iterator[Reading]:
        """Yield every decodable reading of a session; corrupt records are logged and skipped."""
        for sensor_id, timestamp in self.iter_keys(session_id):
            try:
                reading = self.get(session_id, sensor_id, timestamp)
            except StorageReadError:
                _logger.warning(
                    "Skipping corrupt record session=%s sensor=%s ts=%s",
                    session_id,
                    sensor_id,
                    timestamp.isoformat(),
                    exc_info=True,
                )
                continue
            if reading is not None:
                yield reading

    def session_ids(self) -> list[str | None]:
        """Every session bucket present on disk (``None`` for the default bucket)."""
        if not self._root.is_dir():
            return []
        return [session_from_bucket(entry.name) for entry in sorted(self._root.iterdir()) if entry.is_dir()]
