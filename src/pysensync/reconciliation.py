"""Reconciliation between the per-reading store and the consolidated store.

A pass audits one session and repairs divergence in both directions:

1. Enumerate every ``(sensor, timestamp)`` held as an individual record.
2. Add records missing from the consolidated index
   (``missing_in_consolidated``).
3. Enumerate every ``(sensor, timestamp)`` held by the consolidated index.
4. Recreate individual records missing on disk from the consolidated value
   (``missing_individual_file``).
5. When the session has no consolidated index at all, rebuild it from the
   individual records first (``missing_consolidated_index``, one per
   reading) and continue with steps 2-4.
6. Persist the repaired index once, at the end of the pass.

Repairs are planned in full before anything is written. The commit writes
the missing records, then the index in one atomic replace; if it fails or
is cancelled, the records created by the pass are removed again so no
partial repair survives. The session lock is held only while the repairs
are merged into the current index and written, never during the audit.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable, Iterable
from datetime import datetime

from pysensync.exceptions import (
    ReconciliationCancelledError,
    ReconciliationError,
    StorageError,
    StorageReadError,
)
from pysensync.models._base import utcnow
from pysensync.models.reading import Reading
from pysensync.models.reconciliation import ReconciliationReport, RepairDetail, RepairType
from pysensync.storage.consolidated import ConsolidatedStore, SessionIndex, insert_sorted
from pysensync.storage.readings import PerReadingStore

_logger = logging.getLogger(__name__)

SessionIdsProvider = Callable[[], Iterable[str | None]]


def _check_cancel(cancel: threading.Event | None, session_id: str | None) -> None:
    if cancel is not None and cancel.is_set():
        raise ReconciliationCancelledError(
            f"Reconciliation of session={session_id} cancelled",
            session_id=session_id,
        )


class ReconciliationService:
    """Audit and repair the two stores, on demand or periodically.

    Parameters
    ----------
    readings : PerReadingStore
        Individual reading records.
    consolidated : ConsolidatedStore
        Per-session aggregate indexes.
    clock : callable
        Returns the current aware UTC time; used for report timestamps.
    """

    def __init__(
        self,
        readings: PerReadingStore,
        consolidated: ConsolidatedStore,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._readings = readings
        self._consolidated = consolidated
        self._clock = clock
        self._inflight: dict[str | None, set[threading.Event]] = {}
        self._inflight_guard = threading.Lock()
        self._background: set[asyncio.Task[None]] = set()
        self._periodic: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Synchronous pass
    # ------------------------------------------------------------------

    def _load_record(self, session_id: str | None, sensor_id: str, timestamp: datetime) -> Reading | None:
        try:
            return self._readings.get(session_id, sensor_id, timestamp)
        except StorageReadError:
            _logger.warning(
                "Unreadable record left untouched session=%s sensor=%s ts=%s",
                session_id,
                sensor_id,
                timestamp.isoformat(),
                exc_info=True,
            )
            return None

    def reconcile_sync(
        self,
        session_id: str | None,
        *,
        dry_run: bool = False,
        cancel: threading.Event | None = None,
    ) -> ReconciliationReport:
        """Run one pass over *session_id* in the calling thread.

        The audit reads both stores without holding the session lock, so
        ingestion for the session keeps flowing. The lock is only taken to
        merge the repaired readings into the index as it stands at commit
        time and write it.

        Raises
        ------
        ReconciliationCancelledError
            If *cancel* was set; nothing from this pass remains applied.
        ReconciliationError
            If a repair could not be committed; nothing from this pass
            remains applied.
        """
        started_at = self._clock()
        details: list[RepairDetail] = []
        files_to_create: list[Reading] = []
        additions: SessionIndex = {}

        _check_cancel(cancel, session_id)
        file_keys = list(self._readings.iter_keys(session_id))
        file_key_set = set(file_keys)

        try:
            durable = self._consolidated.load_durable(session_id)
        except StorageReadError:
            _logger.error("Consolidated index unreadable, rebuilding session=%s", session_id, exc_info=True)
            durable = None

        # Without any index every record is a rebuild; otherwise only the
        # records the index lacks are added.
        if durable is None:
            repair_type = RepairType.MISSING_CONSOLIDATED_INDEX
            indexed: set[tuple[str, datetime]] = set()
        else:
            repair_type = RepairType.MISSING_IN_CONSOLIDATED
            indexed = {(sensor_id, r.timestamp) for sensor_id, readings in durable.items() for r in readings}

        for sensor_id, timestamp in file_keys:
            if (sensor_id, timestamp) in indexed:
                continue
            _check_cancel(cancel, session_id)
            reading = self._load_record(session_id, sensor_id, timestamp)
            if reading is None:
                continue
            insert_sorted(additions.setdefault(sensor_id, []), reading)
            details.append(RepairDetail(type=repair_type, sensor_id=sensor_id, timestamp=timestamp))

        for sensor_id, readings in (durable or {}).items():
            for reading in readings:
                if (sensor_id, reading.timestamp) in file_key_set:
                    continue
                if reading.sensor_id != sensor_id or reading.session_id != session_id:
                    reading = reading.model_copy(update={"sensor_id": sensor_id, "session_id": session_id})
                files_to_create.append(reading)
                details.append(
                    RepairDetail(
                        type=RepairType.MISSING_INDIVIDUAL_FILE,
                        sensor_id=sensor_id,
                        timestamp=reading.timestamp,
                    )
                )

        repaired = 0
        if details and not dry_run:
            self._commit(session_id, additions, files_to_create, cancel)
            repaired = len(details)

        report = ReconciliationReport(
            session_id=session_id,
            inconsistencies_found=len(details),
            repaired=repaired,
            details=details,
            dry_run=dry_run,
            started_at=started_at,
            finished_at=self._clock(),
        )
        if details:
            _logger.info(
                "Reconciled session=%s found=%d repaired=%d dry_run=%s",
                session_id,
                report.inconsistencies_found,
                report.repaired,
                dry_run,
            )
        else:
            _logger.debug("Session=%s consistent", session_id)
        return report

    def _merge_and_commit(
        self,
        session_id: str | None,
        additions: SessionIndex,
        cancel: threading.Event | None,
    ) -> None:
        with self._consolidated.session_lock(session_id):
            _check_cancel(cancel, session_id)
            try:
                current = self._consolidated.load_durable(session_id) or {}
            except StorageReadError:
                # Replaced by the rebuild planned from the records.
                current = {}
            for sensor_id, readings in additions.items():
                target = current.setdefault(sensor_id, [])
                for reading in readings:
                    insert_sorted(target, reading)
            self._consolidated.commit(session_id, current)

    def _commit(
        self,
        session_id: str | None,
        additions: SessionIndex,
        files_to_create: list[Reading],
        cancel: threading.Event | None,
    ) -> None:
        created: list[Reading] = []
        try:
            for reading in files_to_create:
                _check_cancel(cancel, session_id)
                if self._readings.exists(session_id, reading.sensor_id, reading.timestamp):
                    continue
                self._readings.put(reading)
                created.append(reading)
            if additions:
                self._merge_and_commit(session_id, additions, cancel)
            else:
                _check_cancel(cancel, session_id)
        except (ReconciliationError, StorageError) as exc:
            self._rollback(session_id, created)
            if isinstance(exc, ReconciliationError):
                raise
            raise ReconciliationError(
                f"Reconciliation of session={session_id} failed, no repairs applied: {exc}",
                session_id=session_id,
            ) from exc

    def _rollback(self, session_id: str | None, created: list[Reading]) -> None:
        for reading in created:
            try:
                self._readings.delete(session_id, reading.sensor_id, reading.timestamp)
            except OSError:
                _logger.error(
                    "Rollback could not remove record session=%s sensor=%s ts=%s",
                    session_id,
                    reading.sensor_id,
                    reading.timestamp.isoformat(),
                    exc_info=True,
                )
        if created:
            _logger.warning("Rolled back %d recreated records for session=%s", len(created), session_id)

    # ------------------------------------------------------------------
    # Async entry points
    # ------------------------------------------------------------------

    def _track(self, session_id: str | None, cancel: threading.Event) -> None:
        with self._inflight_guard:
            self._inflight.setdefault(session_id, set()).add(cancel)

    def _untrack(self, session_id: str | None, cancel: threading.Event) -> None:
        with self._inflight_guard:
            events = self._inflight.get(session_id)
            if events is None:
                return
            events.discard(cancel)
            if not events:
                del self._inflight[session_id]

    async def reconcile(self, session_id: str | None, *, dry_run: bool = False) -> ReconciliationReport:
        """Run a pass in a worker thread and wait for its report.

        Cancelling the awaiting task asks the pass to stop at the next
        repair-unit boundary and waits for it to do so before re-raising.
        """
        loop = asyncio.get_running_loop()
        cancel = threading.Event()
        self._track(session_id, cancel)
        future = loop.run_in_executor(
            None,
            lambda: self.reconcile_sync(session_id, dry_run=dry_run, cancel=cancel),
        )
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            cancel.set()
            await asyncio.wait({future})
            if not future.cancelled() and future.exception() is not None:
                _logger.debug("Cancelled pass ended session=%s: %s", session_id, future.exception())
            raise
        finally:
            self._untrack(session_id, cancel)

    def cancel(self, session_id: str | None) -> int:
        """Ask every in-flight pass over *session_id* to stop. Returns how many were signalled."""
        with self._inflight_guard:
            events = list(self._inflight.get(session_id, ()))
        for event in events:
            event.set()
        return len(events)

    async def _reconcile_logged(self, session_id: str | None) -> None:
        try:
            await self.reconcile(session_id)
        except ReconciliationCancelledError:
            _logger.info("Background reconciliation cancelled session=%s", session_id)
        except Exception:
            _logger.exception("Background reconciliation failed session=%s", session_id)

    def reconcile_in_background(self, session_id: str | None) -> asyncio.Task[None]:
        """Schedule a pass without waiting for it; failures are logged."""
        task = asyncio.get_running_loop().create_task(self._reconcile_logged(session_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _run_periodic(self, session_ids: SessionIdsProvider, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            for session_id in list(session_ids()):
                await self._reconcile_logged(session_id)

    def start(self, session_ids: SessionIdsProvider, interval: float) -> None:
        """Audit every session returned by *session_ids* each *interval* seconds."""
        if interval <= 0:
            raise ValueError("interval must be > 0")
        if self._periodic is not None and not self._periodic.done():
            return
        self._periodic = asyncio.get_running_loop().create_task(self._run_periodic(session_ids, interval))
        _logger.debug("Periodic reconciliation started interval=%.1fs", interval)

    async def stop(self) -> None:
        """Stop periodic and background passes."""
        tasks = list(self._background)
        if self._periodic is not None:
            tasks.append(self._periodic)
            self._periodic = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
