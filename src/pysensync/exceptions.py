"""Custom exception hierarchy for pysensync."""

from __future__ import annotations

from datetime import datetime


class SensyncError(Exception):
    """Base exception for all pysensync errors."""


class SensyncConfigError(SensyncError):
    """Invalid or missing configuration."""


class BrokerConnectionError(SensyncError):
    """The broker connection could not be (re-)established.

    Raised or reported once the reconnect policy has exhausted its attempts.
    The connection state stays ``failed`` until the runtime is restarted.
    """

    def __init__(self, message: str, *, attempts: int = 0) -> None:
        self.attempts = attempts
        super().__init__(message)


class StorageError(SensyncError):
    """Persistent storage failure."""


class StorageWriteError(StorageError):
    """A record could not be written after all retry attempts."""

    def __init__(
        self,
        message: str,
        *,
        session_id: str | None = None,
        sensor_id: str | None = None,
        timestamp: datetime | None = None,
        attempts: int = 0,
    ) -> None:
        self.session_id = session_id
        self.sensor_id = sensor_id
        self.timestamp = timestamp
        self.attempts = attempts
        super().__init__(message)


class StorageReadError(StorageError):
    """A stored document exists but cannot be decoded."""


class SessionError(SensyncError):
    """Base class for session lifecycle errors."""


class SessionNotFoundError(SessionError):
    """No session with the requested id exists."""


class SessionStateError(SessionError):
    """The requested transition is not allowed from the current status.

    ``pending -> active -> completed`` is the only valid path and
    ``completed`` is terminal.
    """


class SessionConflictError(SessionError):
    """Activation would attribute a sensor to two active sessions."""

    def __init__(
        self,
        message: str,
        *,
        session_id: str,
        conflicting_session_id: str,
        sensor_ids: frozenset[str],
    ) -> None:
        self.session_id = session_id
        self.conflicting_session_id = conflicting_session_id
        self.sensor_ids = sensor_ids
        super().__init__(message)


class ReconciliationError(SensyncError):
    """A reconciliation pass failed; no partial repairs were applied."""

    def __init__(self, message: str, *, session_id: str | None = None) -> None:
        self.session_id = session_id
        super().__init__(message)


class ReconciliationCancelledError(ReconciliationError):
    """A reconciliation pass was cancelled at a repair-unit boundary."""


class CameraError(SensyncError):
    """The external camera-recording service rejected a start/stop request."""

    def __init__(self, message: str, *, status_code: int | None = None, endpoint: str = "") -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)
