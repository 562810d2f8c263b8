"""Ingestion pipeline: router handler -> normalizer -> dual write.

Normalization and session attribution run inline on the event loop, in
the router's dispatch call. Each sensor then gets its own queue and worker
task, so readings of one sensor are persisted in arrival order while a slow
write for one sensor never holds back another. Store I/O runs on a bounded
thread pool; appends to the consolidated index are retried from the
event loop while another thread holds the session lock.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta

from pysensync._redact import redact_for_log
from pysensync.exceptions import StorageError
from pysensync.ingestion.normalize import SKIP, normalize
from pysensync.models._base import utcnow
from pysensync.models.reading import DeviceClass, Reading, SensorSubscription
from pysensync.storage.consolidated import ConsolidatedStore
from pysensync.storage.readings import PerReadingStore
from pysensync.topics import MessageHandler

_logger = logging.getLogger(__name__)

AttributeCallback = Callable[[str, datetime], str | None]
AcceptsCallback = Callable[[str, datetime], bool]
ErrorCallback = Callable[[Reading, Exception], None]

_ONE_MICROSECOND = timedelta(microseconds=1)
_APPEND_RETRY_MIN = 0.005
_APPEND_RETRY_MAX = 0.1


@dataclasses.dataclass
class PipelineStats:
    """Counters since the pipeline was created."""

    received: int = 0
    skipped: int = 0
    persisted: int = 0
    failed: int = 0


class IngestionPipeline:
    """Turns broker messages into readings persisted in both stores.

    Parameters
    ----------
    readings : PerReadingStore
        Written first for every reading.
    consolidated : ConsolidatedStore
        Appended to once the individual record is durable.
    attribute : callable
        ``attribute(sensor_id, received_at)`` returns the session id a
        reading belongs to, or ``None`` for the default bucket.
    clock : callable
        Returns the current aware UTC time; stamps ``received_at``.
    max_workers : int
        Threads available for store I/O.
    on_error : callable or None
        Called with the reading and the error when a write fails for good.
    accepts : callable or None
        ``accepts(session_id, timestamp)`` tells whether a session still
        takes a reading whose timestamp was moved past a collision. When it
        does not, the reading goes to the default bucket instead.
    """

    def __init__(
        self,
        readings: PerReadingStore,
        consolidated: ConsolidatedStore,
        attribute: AttributeCallback,
        *,
        clock: Callable[[], datetime] = utcnow,
        max_workers: int = 4,
        on_error: ErrorCallback | None = None,
        accepts: AcceptsCallback | None = None,
    ) -> None:
        self._readings = readings
        self._consolidated = consolidated
        self._attribute = attribute
        self._clock = clock
        self._on_error = on_error
        self._accepts = accepts
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="pysensync-store")
        self._queues: dict[str, asyncio.Queue[Reading]] = {}
        self._workers: dict[str, asyncio.Task[None]] = {}
        self._closed = False
        self.stats = PipelineStats()

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def handler_for(self, subscription: SensorSubscription) -> MessageHandler:
        """Router handler applying *subscription*'s device class and sensor binding."""

        def handle(topic: str, payload: bytes) -> None:
            self.submit(topic, payload, subscription.device_class, sensor_id=subscription.sensor_id)

        return handle

    def submit(
        self,
        topic: str,
        payload: bytes | str,
        device_class: DeviceClass = DeviceClass.GENERIC,
        *,
        sensor_id: str | None = None,
    ) -> Reading | None:
        """Normalize, attribute and enqueue one message.

        Must be called on the event loop thread. Returns the enqueued
        reading, or ``None`` for skipped system topics.
        """
        if self._closed:
            raise RuntimeError("Ingestion pipeline is closed")

        received_at = self._clock()
        self.stats.received += 1
        result = normalize(topic, payload, device_class, received_at=received_at, sensor_id=sensor_id)
        if result is SKIP:
            self.stats.skipped += 1
            return None

        session_id = self._attribute(result.sensor_id, received_at)
        reading = result.model_copy(update={"session_id": session_id}) if session_id is not None else result
        self._queue_for(reading.sensor_id).put_nowait(reading)
        return reading

    def _queue_for(self, sensor_id: str) -> asyncio.Queue[Reading]:
        queue = self._queues.get(sensor_id)
        if queue is None:
            queue = asyncio.Queue()
            self._queues[sensor_id] = queue
            self._workers[sensor_id] = asyncio.get_running_loop().create_task(
                self._run_worker(sensor_id, queue),
                name=f"pysensync-sensor-{sensor_id}",
            )
        return queue

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def _run_worker(self, sensor_id: str, queue: asyncio.Queue[Reading]) -> None:
        while True:
            reading = await queue.get()
            try:
                await self._write(reading)
            except StorageError as exc:
                self._fail(reading, exc)
            except Exception as exc:
                _logger.exception("Unexpected failure persisting sensor=%s", sensor_id)
                self._fail(reading, exc)
            else:
                self.stats.persisted += 1
            finally:
                queue.task_done()

    def _free_timestamp(self, reading: Reading) -> Reading:
        timestamp = reading.timestamp
        while self._readings.exists(reading.session_id, reading.sensor_id, timestamp):
            timestamp += _ONE_MICROSECOND
        if timestamp == reading.timestamp:
            return reading
        _logger.debug(
            "Timestamp collision sensor=%s moved %s -> %s",
            reading.sensor_id,
            reading.timestamp.isoformat(),
            timestamp.isoformat(),
        )
        return reading.model_copy(update={"timestamp": timestamp})

    def _place(self, reading: Reading) -> Reading:
        # Runs on the store pool; one call at a time per sensor.
        placed = self._free_timestamp(reading)
        if (
            placed is not reading
            and placed.session_id is not None
            and self._accepts is not None
            and not self._accepts(placed.session_id, placed.timestamp)
        ):
            _logger.info(
                "Moved sensor=%s ts=%s out of session=%s, its window closed before the free timestamp",
                placed.sensor_id,
                placed.timestamp.isoformat(),
                placed.session_id,
            )
            placed = self._free_timestamp(reading.model_copy(update={"session_id": None}))
        self._readings.put(placed)
        return placed

    async def _write(self, reading: Reading) -> Reading:
        loop = asyncio.get_running_loop()
        reading = await loop.run_in_executor(self._executor, self._place, reading)
        # None while another thread holds the session lock.
        delay = _APPEND_RETRY_MIN
        while True:
            appended = await loop.run_in_executor(
                self._executor,
                self._consolidated.try_append,
                reading.session_id,
                reading.sensor_id,
                reading,
            )
            if appended is not None:
                break
            await asyncio.sleep(delay)
            delay = min(delay * 2, _APPEND_RETRY_MAX)
        if not appended:
            _logger.warning(
                "Consolidated index already held sensor=%s ts=%s session=%s",
                reading.sensor_id,
                reading.timestamp.isoformat(),
                reading.session_id,
            )
        return reading

    def _fail(self, reading: Reading, exc: Exception) -> None:
        self.stats.failed += 1
        _logger.error(
            "Reading not persisted sensor=%s session=%s ts=%s topic=%s value=%s payload=%s: %s",
            reading.sensor_id,
            reading.session_id,
            reading.timestamp.isoformat(),
            reading.topic,
            reading.value,
            redact_for_log(reading.raw_payload),
            exc,
        )
        if self._on_error is not None:
            try:
                self._on_error(reading, exc)
            except Exception:
                _logger.exception("on_error callback failed")

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def drain(self, sensor_ids: Iterable[str] | None = None) -> None:
        """Wait until every reading received so far for *sensor_ids* (default all) is processed."""
        if sensor_ids is None:
            queues = list(self._queues.values())
        else:
            queues = [self._queues[s] for s in set(sensor_ids) if s in self._queues]
        if queues:
            await asyncio.gather(*(queue.join() for queue in queues))

    async def close(self) -> None:
        """Drain every queue, stop the workers and release the store pool."""
        if self._closed:
            return
        await self.drain()
        self._closed = True
        workers = list(self._workers.values())
        for task in workers:
            task.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        self._workers.clear()
        self._queues.clear()
        self._executor.shutdown(wait=True)
        _logger.debug(
            "Pipeline closed received=%d persisted=%d failed=%d skipped=%d",
            self.stats.received,
            self.stats.persisted,
            self.stats.failed,
            self.stats.skipped,
        )
