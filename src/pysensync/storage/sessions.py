"""Durable session records (``<root>/sessions/<id>.json``)."""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import ValidationError

from pysensync.exceptions import StorageWriteError
from pysensync.models.session import Session
from pysensync.storage._files import atomic_write_json, encode_component, read_json, retry_io

_logger = logging.getLogger(__name__)


class SessionStore:
    """One JSON document per session, written atomically."""

    def __init__(self, root: str | Path, *, write_retries: int = 3, retry_delay: float = 0.1) -> None:
        self._root = Path(root) / "sessions"
        self._write_retries = write_retries
        self._retry_delay = retry_delay

    def path_for(self, session_id: str) -> Path:
        return self._root / f"{encode_component(session_id)}.json"

    def save(self, session: Session) -> None:
        path = self.path_for(session.id)
        document = session.to_document()
        try:
            retry_io(
                lambda: atomic_write_json(path, document),
                attempts=self._write_retries,
                delay=self._retry_delay,
                what=f"save session {session.id}",
            )
        except OSError as exc:
            raise StorageWriteError(
                f"Could not write session {session.id}: {exc}",
                session_id=session.id,
                attempts=self._write_retries,
            ) from exc

    def delete(self, session_id: str) -> None:
        try:
            self.path_for(session_id).unlink()
        except FileNotFoundError:
            pass

    def load_all(self) -> list[Session]:
        """Every readable session record; unreadable ones are logged and skipped."""
        if not self._root.is_dir():
            return []
        sessions: list[Session] = []
        for path in sorted(self._root.glob("*.json")):
            try:
                sessions.append(Session.model_validate(read_json(path)))
            except (OSError, ValueError, ValidationError):
                _logger.warning("Skipping unreadable session record %s", path, exc_info=True)
        return sessions
