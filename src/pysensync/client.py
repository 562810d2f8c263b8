"""High-level async client for sensor capture sessions."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any

import aiohttp

from pysensync._mqtt import ClientFactory, MqttRuntime
from pysensync.camera import CameraRecorder, HttpCameraRecorder
from pysensync.config import SensyncConfig
from pysensync.connection import ConnectionPhase, ConnectionState
from pysensync.exceptions import BrokerConnectionError, SensyncError
from pysensync.lifecycle import SessionController
from pysensync.models._base import utcnow
from pysensync.models.reading import DeviceClass, Reading, SensorSubscription
from pysensync.models.reconciliation import ReconciliationReport
from pysensync.models.session import Session
from pysensync.pipeline import IngestionPipeline, PipelineStats
from pysensync.reconciliation import ReconciliationService
from pysensync.storage.consolidated import ConsolidatedStore, SessionIndex
from pysensync.storage.readings import PerReadingStore
from pysensync.storage.sessions import SessionStore
from pysensync.topics import SubscriptionHandle, TopicRouter

_logger = logging.getLogger(__name__)


class SensyncClient:
    """Async client wiring broker, stores, reconciliation and sessions.

    Usage::

        async with SensyncClient(config) as client:
            client.register_device("front_door", DeviceClass.CONTACT)
            session = await client.create_session({"front_door"})
            await client.activate_session(session.id)
            ...
            await client.complete_session(session.id)
            data = await client.get_session_data(session.id)

    Parameters
    ----------
    config : SensyncConfig
        Broker, storage and reconciliation settings.
    camera : CameraRecorder or None
        Camera collaborator. When omitted and ``config.camera_url`` is set,
        an :class:`HttpCameraRecorder` is created.
    http_session : aiohttp.ClientSession or None
        Session for the HTTP camera adapter; created and closed by the
        client when omitted.
    connect : bool
        Start the MQTT runtime on enter. ``False`` leaves ingestion to
        :meth:`ingest` (tests, replay tools).
    clock : callable
        Returns the current aware UTC time.
    on_connection_state : callable or None
        Called on the event loop with every broker state change.
    mqtt_client_factory : callable or None
        Builds the paho client; overridden in tests.
    """

    def __init__(
        self,
        config: SensyncConfig,
        *,
        camera: CameraRecorder | None = None,
        http_session: aiohttp.ClientSession | None = None,
        connect: bool = True,
        clock: Callable[[], datetime] = utcnow,
        on_connection_state: Callable[[ConnectionState], None] | None = None,
        mqtt_client_factory: ClientFactory | None = None,
    ) -> None:
        self._config = config
        self._camera = camera
        self._external_session = http_session is not None
        self._http_session = http_session
        self._connect = connect
        self._clock = clock
        self._on_connection_state = on_connection_state
        self._mqtt_client_factory = mqtt_client_factory

        self._readings = PerReadingStore(
            config.data_dir,
            write_retries=config.store_write_retries,
            retry_delay=config.store_retry_delay,
        )
        self._consolidated = ConsolidatedStore(
            config.data_dir,
            snapshot_interval=config.snapshot_interval,
            write_retries=config.store_write_retries,
            retry_delay=config.store_retry_delay,
        )
        self._session_store = SessionStore(
            config.data_dir,
            write_retries=config.store_write_retries,
            retry_delay=config.store_retry_delay,
        )
        self._router = TopicRouter()
        self._reconciler = ReconciliationService(self._readings, self._consolidated, clock=clock)
        self._sessions: SessionController | None = None
        self._pipeline: IngestionPipeline | None = None
        self._runtime: MqttRuntime | None = None
        self._connection_state = ConnectionState()
        self._state_waiters: list[asyncio.Future[None]] = []

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> SensyncClient:
        loop = asyncio.get_running_loop()

        camera = self._camera
        if camera is None and self._config.camera_url:
            if self._http_session is None:
                self._http_session = aiohttp.ClientSession()
            camera = HttpCameraRecorder(
                self._config.camera_url,
                self._http_session,
                timeout=self._config.camera_timeout,
            )

        self._pipeline = IngestionPipeline(
            self._readings,
            self._consolidated,
            self._attribute,
            clock=self._clock,
            max_workers=self._config.max_store_workers,
            accepts=self._accepts,
        )
        self._sessions = SessionController(
            self._session_store,
            reconciler=self._reconciler,
            camera=camera,
            drain=self._pipeline.drain,
            purge=self._purge_session,
            release=self._release_session,
            clock=self._clock,
        )
        await self._sessions.load()

        if self._config.reconcile_interval > 0:
            self._reconciler.start(self._audited_sessions, self._config.reconcile_interval)

        if self._connect:
            runtime = MqttRuntime(
                config=self._config,
                loop=loop,
                on_message=self._on_message,
                on_connected=self._router.replay,
                on_state=self._on_state,
                client_factory=self._mqtt_client_factory,
                logger=_logger,
            )
            self._router.attach(runtime)
            runtime.start()
            self._runtime = runtime
        return self

    async def __aexit__(self, *exc: Any) -> None:
        loop = asyncio.get_running_loop()
        await self._reconciler.stop()
        runtime = self._runtime
        self._runtime = None
        if runtime is not None:
            await loop.run_in_executor(None, runtime.stop)
        if self._pipeline is not None:
            await self._pipeline.close()
            self._pipeline = None
        await loop.run_in_executor(None, self._consolidated.flush_all)
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None
        self._sessions = None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_sessions(self) -> SessionController:
        if self._sessions is None:
            raise SensyncError("Client not initialized. Use 'async with SensyncClient(...) as client:'")
        return self._sessions

    def _require_pipeline(self) -> IngestionPipeline:
        if self._pipeline is None:
            raise SensyncError("Client not initialized. Use 'async with SensyncClient(...) as client:'")
        return self._pipeline

    def _attribute(self, sensor_id: str, at: datetime) -> str | None:
        if self._sessions is None:
            return None
        return self._sessions.attribute(sensor_id, at)

    def _accepts(self, session_id: str, at: datetime) -> bool:
        sessions = self._sessions
        return sessions is not None and sessions.accepts(session_id, at)

    def _on_message(self, topic: str, payload: bytes) -> None:
        self._router.dispatch(topic, payload)

    def _on_state(self, state: ConnectionState) -> None:
        self._connection_state = state
        waiters, self._state_waiters = self._state_waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)
        if self._on_connection_state is not None:
            self._on_connection_state(state)

    def _audited_sessions(self) -> list[str | None]:
        active: list[str | None] = [s.id for s in self._require_sessions().active_sessions()]
        return [*active, None]

    def _purge_sync(self, session_id: str) -> None:
        with self._consolidated.session_lock(session_id):
            self._readings.delete_session(session_id)
            self._consolidated.delete_session(session_id)

    async def _purge_session(self, session_id: str) -> None:
        await asyncio.get_running_loop().run_in_executor(None, self._purge_sync, session_id)

    async def _release_session(self, session_id: str) -> None:
        await asyncio.get_running_loop().run_in_executor(None, self._consolidated.evict, session_id)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def connection_state(self) -> ConnectionState:
        """Latest broker connection state (``failed`` once retries are exhausted)."""
        return self._connection_state

    @property
    def stats(self) -> PipelineStats:
        return self._require_pipeline().stats

    async def wait_connected(self, timeout: float | None = None) -> None:
        """Wait until the broker connection is up.

        Raises
        ------
        BrokerConnectionError
            If the runtime gave up after exhausting its reconnect attempts.
        TimeoutError
            If *timeout* elapses first.
        """

        async def _wait() -> None:
            loop = asyncio.get_running_loop()
            while True:
                state = self._connection_state
                if state.is_connected:
                    return
                if state.phase == ConnectionPhase.FAILED:
                    raise BrokerConnectionError(
                        f"MQTT broker unreachable after {state.attempt} attempts: {state.last_error}",
                        attempts=state.attempt,
                    )
                if self._runtime is None:
                    raise SensyncError("MQTT runtime not started")
                waiter: asyncio.Future[None] = loop.create_future()
                self._state_waiters.append(waiter)
                await waiter

        await asyncio.wait_for(_wait(), timeout)

    # ------------------------------------------------------------------
    # Sensors
    # ------------------------------------------------------------------

    def register_sensor(self, subscription: SensorSubscription) -> SubscriptionHandle:
        """Route messages matching ``subscription.topic_filter`` into the pipeline."""
        handler = self._require_pipeline().handler_for(subscription)
        handle = self._router.subscribe(subscription.topic_filter, handler)
        _logger.debug(
            "Sensor registered filter=%s class=%s",
            subscription.topic_filter,
            subscription.device_class.value,
        )
        return handle

    def register_device(
        self,
        friendly_name: str,
        device_class: DeviceClass = DeviceClass.GENERIC,
    ) -> SubscriptionHandle:
        """Register a device published at ``<topic_root>/<friendly_name>``."""
        return self.register_sensor(
            SensorSubscription(
                topic_filter=f"{self._config.topic_root}/{friendly_name}",
                device_class=device_class,
                sensor_id=friendly_name,
            )
        )

    def remove_sensor(self, handle: SubscriptionHandle) -> None:
        self._router.unsubscribe(handle)

    def ingest(self, topic: str, payload: bytes | str) -> int:
        """Dispatch a message as if it came from the broker; returns handlers invoked."""
        data = payload.encode("utf-8") if isinstance(payload, str) else payload
        return self._router.dispatch(topic, data)

    async def drain(self) -> None:
        """Wait until every received reading is persisted."""
        await self._require_pipeline().drain()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_session(
        self,
        sensor_ids: Iterable[str],
        *,
        name: str | None = None,
        session_id: str | None = None,
    ) -> Session:
        return await self._require_sessions().create(sensor_ids, name=name, session_id=session_id)

    async def activate_session(self, session_id: str) -> Session:
        return await self._require_sessions().activate(session_id)

    async def complete_session(self, session_id: str) -> Session:
        return await self._require_sessions().complete(session_id)

    async def delete_session(self, session_id: str) -> None:
        await self._require_sessions().delete(session_id)

    def get_session(self, session_id: str) -> Session | None:
        return self._require_sessions().get(session_id)

    def list_sessions(self) -> list[Session]:
        return self._require_sessions().list()

    # ------------------------------------------------------------------
    # Data access
    # ------------------------------------------------------------------

    async def get_session_data(self, session_id: str | None) -> SessionIndex:
        """Consolidated view of a session (deep copy, safe to mutate)."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._consolidated.get_session, session_id)

    async def get_reading(self, session_id: str | None, sensor_id: str, timestamp: datetime) -> Reading | None:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._readings.get, session_id, sensor_id, timestamp)

    async def reconcile(self, session_id: str | None, *, dry_run: bool = False) -> ReconciliationReport:
        """Audit and repair a session now (call before exporting it)."""
        return await self._reconciler.reconcile(session_id, dry_run=dry_run)
