"""Internal threaded MQTT runtime.

The runtime owns one paho-mqtt client at a time and drives its network
loop from a dedicated thread. Connection failures are fed through the pure
state machine in :mod:`pysensync.connection`; the runtime only sleeps for
the delay the resulting state carries and gives up once it is ``failed``.
Messages, state changes and CONNACKs are handed to the asyncio loop with
``call_soon_threadsafe``.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable
from typing import Any, cast

import paho.mqtt.client as mqtt

from pysensync.config import SensyncConfig
from pysensync.connection import (
    BackoffPolicy,
    ConnectionEvent,
    ConnectionPhase,
    ConnectionState,
    transition,
)

ClientFactory = Callable[[], mqtt.Client]


def backoff_policy_from_config(config: SensyncConfig) -> BackoffPolicy:
    return BackoffPolicy(
        base_delay=config.reconnect_base_delay,
        max_delay=config.reconnect_max_delay,
        max_attempts=config.reconnect_max_attempts,
    )


class MqttRuntime:
    """Threaded paho-mqtt runtime that emits messages onto an asyncio loop.

    Parameters
    ----------
    config : SensyncConfig
        Broker address, credentials, keepalive and reconnect policy.
    loop : asyncio.AbstractEventLoop
        Loop receiving every callback.
    on_message : callable
        ``on_message(topic, payload)`` for every PUBLISH.
    on_connected : callable
        Called after every successful CONNACK (subscriptions must be
        replayed from here).
    on_state : callable or None
        Called with each new :class:`ConnectionState`.
    client_factory : callable or None
        Builds the paho client; overridden in tests.
    """

    def __init__(
        self,
        *,
        config: SensyncConfig,
        loop: asyncio.AbstractEventLoop,
        on_message: Callable[[str, bytes], None],
        on_connected: Callable[[], None],
        on_state: Callable[[ConnectionState], None] | None = None,
        client_factory: ClientFactory | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._loop = loop
        self._on_message = on_message
        self._on_connected = on_connected
        self._on_state = on_state
        self._client_factory = client_factory or self._default_client
        self._logger = logger or logging.getLogger(__name__)
        self._policy = backoff_policy_from_config(config)

        self._state = ConnectionState()
        self._state_lock = threading.Lock()
        self._client: mqtt.Client | None = None
        self._client_lock = threading.Lock()
        self._subscribed: set[str] = set()
        self._connack_seen = False
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_running(self) -> bool:
        """Whether the network thread is alive."""
        return self._thread is not None and self._thread.is_alive()

    # ------------------------------------------------------------------
    # Client construction
    # ------------------------------------------------------------------

    def _default_client(self) -> mqtt.Client:
        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=self._config.client_id,
            protocol=mqtt.MQTTv311,
            reconnect_on_failure=False,
        )
        client.enable_logger(self._logger)
        if self._config.username:
            client.username_pw_set(self._config.username, self._config.password)
        if self._config.tls:
            client.tls_set()
        return client

    def _build_client(self) -> mqtt.Client:
        client = self._client_factory()

        def on_connect(
            c: mqtt.Client,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            self._connack_seen = True
            if reason_code.value != 0:
                self._logger.warning("MQTT connect refused: %s", reason_code)
                self._apply(ConnectionEvent.CONNECT_FAILED, error=f"CONNACK {reason_code}")
                c.disconnect()
                return
            with self._client_lock:
                self._subscribed.clear()
            self._apply(ConnectionEvent.CONNECTED)
            self._logger.info("MQTT connected host=%s port=%s", self._config.broker_host, self._config.broker_port)
            self._post(self._on_connected)

        def on_message(_c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
            self._post(self._on_message, msg.topic, bytes(msg.payload))

        def on_disconnect(
            _client: mqtt.Client,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if not self._stop_event.is_set():
                self._logger.debug("MQTT disconnected: %s", reason_code)

        client.on_connect = on_connect
        client.on_message = on_message
        client.on_disconnect = on_disconnect
        return client

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _post(self, callback: Callable[..., None], *args: Any) -> None:
        try:
            self._loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            self._logger.debug("Event loop closed, dropping MQTT callback", exc_info=True)

    def _apply(self, event: ConnectionEvent, *, error: str | None = None) -> ConnectionState:
        with self._state_lock:
            previous = self._state
            self._state = transition(previous, event, self._policy, error=error)
            state = self._state
        if state != previous:
            self._logger.debug("MQTT state %s -> %s attempt=%d", previous.phase, state.phase, state.attempt)
            if self._on_state is not None:
                self._post(self._on_state, state)
        return state

    # ------------------------------------------------------------------
    # Network thread
    # ------------------------------------------------------------------

    def _run(self) -> None:
        while not self._stop_event.is_set():
            client = self._build_client()
            with self._client_lock:
                self._client = client
            self._connack_seen = False
            try:
                client.connect(self._config.broker_host, self._config.broker_port, keepalive=self._config.keepalive)
            except (OSError, ValueError) as exc:
                self._logger.debug("MQTT connect failed: %s", exc)
                state = self._apply(ConnectionEvent.CONNECT_FAILED, error=str(exc))
            else:
                state = self._pump(client)

            with self._client_lock:
                self._client = None
                self._subscribed.clear()

            if self._stop_event.is_set():
                break
            if state.phase == ConnectionPhase.FAILED:
                self._logger.error(
                    "MQTT broker unreachable after %d attempts: %s",
                    state.attempt,
                    state.last_error,
                )
                break
            if state.phase == ConnectionPhase.RETRYING:
                self._logger.info("MQTT reconnecting in %.1fs (attempt %d)", state.delay, state.attempt)
                self._stop_event.wait(state.delay)

    def _pump(self, client: mqtt.Client) -> ConnectionState:
        """Run the network loop until the connection ends; return the resulting state."""
        rc = mqtt.MQTT_ERR_SUCCESS
        while not self._stop_event.is_set():
            rc = client.loop(timeout=1.0)
            if rc != mqtt.MQTT_ERR_SUCCESS:
                break
        if self._stop_event.is_set():
            return self._state
        if self._state.phase == ConnectionPhase.CONNECTED:
            return self._apply(ConnectionEvent.CONNECTION_LOST, error=mqtt.error_string(rc))
        if not self._connack_seen:
            # Dropped before any CONNACK arrived.
            return self._apply(ConnectionEvent.CONNECT_FAILED, error=mqtt.error_string(rc))
        return self._state

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the network thread (restarts from ``idle`` after a failure)."""
        self.stop()
        self._stop_event.clear()
        self._apply(ConnectionEvent.RESET)
        self._logger.debug(
            "MQTT runtime start requested host=%s port=%s client_id=%s",
            self._config.broker_host,
            self._config.broker_port,
            self._config.client_id,
        )
        thread = threading.Thread(target=self._run, name="pysensync-mqtt", daemon=True)
        self._thread = thread
        thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Disconnect and join the network thread."""
        thread = self._thread
        self._thread = None
        if thread is None:
            return
        self._stop_event.set()
        with self._client_lock:
            client = self._client
        if client is not None:
            try:
                client.disconnect()
            except (OSError, ValueError):
                self._logger.debug("MQTT disconnect failed", exc_info=True)
        thread.join(timeout)
        self._apply(ConnectionEvent.STOP)
        self._logger.debug("MQTT network loop stopped")

    def join(self, timeout: float | None = None) -> None:
        thread = self._thread
        if thread is not None:
            thread.join(timeout)

    def subscribe(self, topic_filter: str) -> None:
        """Subscribe on the current connection unless already subscribed.

        While disconnected this is a no-op; the filter is subscribed by the
        replay that follows the next CONNACK.
        """
        with self._client_lock:
            client = self._client
            if client is None or not self._state.is_connected or topic_filter in self._subscribed:
                return
            self._subscribed.add(topic_filter)
        self._logger.debug("MQTT subscribing topic=%s", topic_filter)
        client.subscribe(topic_filter, qos=0)

    def unsubscribe(self, topic_filter: str) -> None:
        with self._client_lock:
            client = self._client
            if client is None or topic_filter not in self._subscribed:
                return
            self._subscribed.discard(topic_filter)
        self._logger.debug("MQTT unsubscribing topic=%s", topic_filter)
        client.unsubscribe(topic_filter)
