"""Session lifecycle: ``pending -> active -> completed``.

The controller decides which session, if any, a reading belongs to. It
coordinates activation and completion with the camera recorder, and it
refuses to report a session as completed before a final reconciliation
pass has succeeded.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime

from pysensync.camera import CameraRecorder
from pysensync.exceptions import (
    CameraError,
    SessionConflictError,
    SessionNotFoundError,
    SessionStateError,
)
from pysensync.models._base import ensure_utc, utcnow
from pysensync.models.session import Session, SessionStatus
from pysensync.reconciliation import ReconciliationService
from pysensync.storage.sessions import SessionStore

_logger = logging.getLogger(__name__)

DrainCallback = Callable[[frozenset[str]], Awaitable[None]]
PurgeCallback = Callable[[str], Awaitable[None]]
ReleaseCallback = Callable[[str], Awaitable[None]]


class SessionController:
    """Owns session records and gates reading attribution.

    Parameters
    ----------
    store : SessionStore
        Durable session records.
    reconciler : ReconciliationService
        Runs the mandatory pass before a session is reported completed.
    camera : CameraRecorder or None
        Started on activation and stopped on completion.
    drain : callable or None
        ``await drain(sensor_ids)`` waits until every reading already
        received for those sensors is persisted.
    purge : callable or None
        ``await purge(session_id)`` removes a deleted session's readings.
    release : callable or None
        ``await release(session_id)`` frees resources held for a session
        once it is completed, such as its cached index.
    clock : callable
        Returns the current aware UTC time.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        reconciler: ReconciliationService,
        camera: CameraRecorder | None = None,
        drain: DrainCallback | None = None,
        purge: PurgeCallback | None = None,
        release: ReleaseCallback | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._reconciler = reconciler
        self._camera = camera
        self._drain = drain
        self._purge = purge
        self._release = release
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def list(self) -> list[Session]:
        return sorted(self._sessions.values(), key=lambda s: (s.created_at, s.id))

    def active_sessions(self) -> list[Session]:
        return [s for s in self._sessions.values() if s.is_active]

    def _require(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"No session with id {session_id!r}")
        return session

    def attribute(self, sensor_id: str, at: datetime) -> str | None:
        """Session a reading of *sensor_id* received at *at* belongs to.

        ``None`` routes the reading to the session-less default bucket:
        no active session covers the sensor, the reading predates the
        session start, or the session is being completed.
        """
        for session in self._sessions.values():
            if sensor_id in session.sensor_ids and session.covers(at):
                return session.id
        return None

    def accepts(self, session_id: str, at: datetime) -> bool:
        """Whether *at* lies inside the recording window of *session_id*."""
        session = self._sessions.get(session_id)
        if session is None or session.start_time is None:
            return False
        at = ensure_utc(at)
        return session.start_time <= at and (session.end_time is None or at <= session.end_time)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _save(self, session: Session) -> None:
        await asyncio.get_running_loop().run_in_executor(None, self._store.save, session)

    async def load(self) -> list[Session]:
        """Restore persisted sessions (call once at start-up)."""
        sessions = await asyncio.get_running_loop().run_in_executor(None, self._store.load_all)
        async with self._lock:
            for session in sessions:
                self._sessions[session.id] = session
        completing = [s.id for s in sessions if s.is_completing]
        if completing:
            _logger.warning("Sessions awaiting completion after restart: %s", ", ".join(sorted(completing)))
        return sessions

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def create(
        self,
        sensor_ids: Iterable[str],
        *,
        name: str | None = None,
        session_id: str | None = None,
    ) -> Session:
        """Create a pending session over *sensor_ids*."""
        async with self._lock:
            new_id = session_id or uuid.uuid4().hex
            if new_id in self._sessions:
                raise SessionStateError(f"Session {new_id!r} already exists")
            session = Session(
                id=new_id,
                sensor_ids=frozenset(sensor_ids),
                name=name,
                created_at=self._clock(),
            )
            await self._save(session)
            self._sessions[session.id] = session
        _logger.info("Session created id=%s sensors=%d", session.id, len(session.sensor_ids))
        return session

    async def activate(self, session_id: str) -> Session:
        """Start recording and attribute readings to *session_id* from now on.

        Raises
        ------
        SessionConflictError
            If a sensor already belongs to another active session. Nothing
            is started in that case.
        SessionStateError
            If the session is not pending.
        CameraError
            If the camera refuses to start; the session stays pending.
        """
        async with self._lock:
            session = self._require(session_id)
            if session.status != SessionStatus.PENDING:
                raise SessionStateError(f"Session {session_id!r} is {session.status.value}, expected pending")

            for other in self._sessions.values():
                if other.id == session_id or not other.is_active:
                    continue
                overlap = other.sensor_ids & session.sensor_ids
                if overlap:
                    raise SessionConflictError(
                        f"Session {session_id!r} overlaps active session {other.id!r} "
                        f"on sensors {', '.join(sorted(overlap))}",
                        session_id=session_id,
                        conflicting_session_id=other.id,
                        sensor_ids=frozenset(overlap),
                    )

            if self._camera is not None:
                await self._camera.start_recording(session_id)

            # Stamped right after the camera confirms, so the first frame
            # and the first attributed reading share the same origin.
            active = session.model_copy(
                update={"status": SessionStatus.ACTIVE, "start_time": ensure_utc(self._clock())}
            )
            self._sessions[session_id] = active
            try:
                await self._save(active)
            except Exception:
                self._sessions[session_id] = session
                await self._stop_camera(session_id)
                raise

        _logger.info("Session activated id=%s start=%s", session_id, active.start_time)
        return active

    async def _stop_camera(self, session_id: str) -> None:
        if self._camera is None:
            return
        try:
            await self._camera.stop_recording(session_id)
        except CameraError:
            _logger.error("Camera stop failed for session=%s", session_id, exc_info=True)

    async def complete(self, session_id: str) -> Session:
        """Freeze attribution, settle pending writes and reconcile.

        ``end_time`` is set and attribution frozen first; later readings of
        the session's sensors go to the default bucket. The session only
        becomes ``completed`` once the final reconciliation pass succeeds.
        If it fails, the session stays frozen (active with ``end_time``)
        and ``complete`` may be called again.

        Raises
        ------
        SessionStateError
            If the session is pending or already completed.
        ReconciliationError
            If the final pass fails.
        """
        async with self._lock:
            session = self._require(session_id)
            if session.status != SessionStatus.ACTIVE:
                raise SessionStateError(f"Session {session_id!r} is {session.status.value}, expected active")

            if session.end_time is None:
                session = session.model_copy(update={"end_time": ensure_utc(self._clock())})
                self._sessions[session_id] = session
                await self._save(session)
                _logger.info("Session frozen id=%s end=%s", session_id, session.end_time)
                await self._stop_camera(session_id)

            if self._drain is not None:
                await self._drain(session.sensor_ids)

            report = await self._reconciler.reconcile(session_id)

            completed = session.model_copy(update={"status": SessionStatus.COMPLETED})
            await self._save(completed)
            self._sessions[session_id] = completed

        _logger.info(
            "Session completed id=%s repaired=%d",
            session_id,
            report.repaired,
        )
        if self._release is not None:
            try:
                await self._release(session_id)
            except Exception:
                _logger.warning("Releasing resources of session=%s failed", session_id, exc_info=True)
        return completed

    async def delete(self, session_id: str) -> None:
        """Cancel reconciliation and remove the session with its data.

        An active session is frozen and its sensors drained first, so no
        reading attributed before the freeze is written after the purge.
        """
        async with self._lock:
            session = self._require(session_id)
            cancelled = self._reconciler.cancel(session_id)
            if cancelled:
                _logger.debug("Cancelled %d reconciliation passes for session=%s", cancelled, session_id)
            if session.is_active:
                if session.end_time is None:
                    session = session.model_copy(update={"end_time": ensure_utc(self._clock())})
                    self._sessions[session_id] = session
                    await self._stop_camera(session_id)
                if self._drain is not None:
                    await self._drain(session.sensor_ids)
            del self._sessions[session_id]
            await asyncio.get_running_loop().run_in_executor(None, self._store.delete, session_id)
            if self._purge is not None:
                await self._purge(session_id)
        _logger.info("Session deleted id=%s", session_id)
