"""Persistence layer: per-reading records, consolidated indexes and session records."""

from pysensync.storage._files import DEFAULT_BUCKET
from pysensync.storage.consolidated import ConsolidatedStore, SessionIndex
from pysensync.storage.readings import PerReadingStore
from pysensync.storage.sessions import SessionStore

__all__ = [
    "DEFAULT_BUCKET",
    "ConsolidatedStore",
    "PerReadingStore",
    "SessionIndex",
    "SessionStore",
]
