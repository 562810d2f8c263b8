"""Filesystem helpers shared by the stores.

Internal to pysensync and may change at any time.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
import threading
import time
from collections.abc import Callable, Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypeVar
from urllib.parse import quote, unquote

_logger = logging.getLogger(__name__)

T = TypeVar("T")

#: Bucket name used for readings captured outside any session.
DEFAULT_BUCKET = "_unassigned"

_TS_FORMAT = "%Y%m%dT%H%M%S%fZ"


def bucket_name(session_id: str | None) -> str:
    return DEFAULT_BUCKET if session_id is None else encode_component(session_id)


def session_from_bucket(name: str) -> str | None:
    return None if name == DEFAULT_BUCKET else decode_component(name)


def encode_component(value: str) -> str:
    """Percent-encode *value* into a single safe path component."""
    encoded = quote(value, safe="-_@")
    # "." and ".." are valid after quoting but not as directory names.
    if encoded in {".", ".."}:
        encoded = encoded.replace(".", "%2E")
    # Names starting with "_" are reserved for buckets such as DEFAULT_BUCKET.
    if encoded.startswith("_"):
        encoded = "%5F" + encoded[1:]
    return encoded


def decode_component(value: str) -> str:
    return unquote(value)


def timestamp_key(timestamp: datetime) -> str:
    """Sortable, reversible file stem for a timestamp (microsecond precision)."""
    return timestamp.astimezone(UTC).strftime(_TS_FORMAT)


def parse_timestamp_key(key: str) -> datetime:
    return datetime.strptime(key, _TS_FORMAT).replace(tzinfo=UTC)


def atomic_write_json(path: Path, document: Any) -> None:
    """Write *document* to *path* via temp file + rename.

    The temp file lives in the target directory so ``os.replace`` never
    crosses filesystems. A crash leaves either the old file or the new one.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(document, handle, ensure_ascii=False, separators=(",", ":"))
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_name)
        raise


def read_json(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def retry_io(
    operation: Callable[[], T],
    *,
    attempts: int,
    delay: float,
    what: str,
) -> T:
    """Run a blocking I/O *operation*, retrying ``OSError`` up to *attempts* times.

    The last error is re-raised once attempts are exhausted.
    """
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except OSError as exc:
            if attempt >= attempts:
                _logger.error("I/O failed %s after %d attempts: %s", what, attempt, exc)
                raise
            _logger.warning(
                "I/O failed %s (attempt %d/%d), retrying in %.2fs: %s",
                what,
                attempt,
                attempts,
                delay,
                exc,
            )
            if delay > 0:
                time.sleep(delay)
    raise AssertionError("unreachable")  # pragma: no cover


class KeyedLocks:
    """Lazily created re-entrant lock per key.

    Locks are never evicted; the key space is bounded by the number of
    ``(session, sensor)`` pairs seen by the process.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Any, threading.RLock] = {}

    def get(self, key: Any) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextlib.contextmanager
    def hold(self, key: Any) -> Iterator[None]:
        with self.get(key):
            yield
