"""Broker connection state machine.

The reconnect policy is a pure function of ``(state, event, policy)`` so it
can be exercised without a broker. The MQTT runtime feeds it events and
sleeps for whatever delay the resulting state carries.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import StrEnum


class ConnectionPhase(StrEnum):
    IDLE = "idle"
    CONNECTED = "connected"
    RETRYING = "retrying"
    FAILED = "failed"
    STOPPED = "stopped"


class ConnectionEvent(StrEnum):
    CONNECTED = "connected"
    CONNECT_FAILED = "connect_failed"
    CONNECTION_LOST = "connection_lost"
    STOP = "stop"
    RESET = "reset"


@dataclass(frozen=True)
class BackoffPolicy:
    """Bounded exponential backoff.

    ``delay_for(n)`` is ``base_delay * factor ** (n - 1)`` capped at
    ``max_delay``. After ``max_attempts`` consecutive failures the connection
    is considered failed.
    """

    base_delay: float = 1.0
    max_delay: float = 30.0
    factor: float = 2.0
    max_attempts: int = 10

    def delay_for(self, attempt: int) -> float:
        if attempt <= 0:
            return 0.0
        return min(self.max_delay, self.base_delay * (self.factor ** (attempt - 1)))


@dataclass(frozen=True)
class ConnectionState:
    """Snapshot of the broker connection.

    ``attempt`` counts consecutive failed connection attempts; ``delay`` is
    how long to wait before the next one (only meaningful while retrying).
    """

    phase: ConnectionPhase = ConnectionPhase.IDLE
    attempt: int = 0
    delay: float = 0.0
    last_error: str | None = None

    @property
    def is_connected(self) -> bool:
        return self.phase == ConnectionPhase.CONNECTED

    @property
    def is_terminal(self) -> bool:
        return self.phase in (ConnectionPhase.FAILED, ConnectionPhase.STOPPED)


def transition(
    state: ConnectionState,
    event: ConnectionEvent,
    policy: BackoffPolicy,
    *,
    error: str | None = None,
) -> ConnectionState:
    """Return the state that follows *event*.

    - ``CONNECTED`` always lands in ``connected`` and clears the counter.
    - ``CONNECT_FAILED`` / ``CONNECTION_LOST`` move to ``retrying(n + 1)``
      with the policy delay, or to ``failed`` once the attempt cap is hit.
    - ``STOP`` is terminal; ``RESET`` returns to ``idle`` (manual restart).
    - Terminal states ignore everything except ``RESET``.
    """
    if event == ConnectionEvent.RESET:
        return ConnectionState()

    if state.is_terminal:
        return state

    if event == ConnectionEvent.STOP:
        return ConnectionState(phase=ConnectionPhase.STOPPED)

    if event == ConnectionEvent.CONNECTED:
        return ConnectionState(phase=ConnectionPhase.CONNECTED)

    # A drop from a healthy connection starts a fresh retry sequence.
    attempt = 1 if state.phase == ConnectionPhase.CONNECTED else state.attempt + 1
    if attempt > policy.max_attempts:
        return replace(
            state,
            phase=ConnectionPhase.FAILED,
            attempt=attempt - 1,
            delay=0.0,
            last_error=error or state.last_error,
        )
    return ConnectionState(
        phase=ConnectionPhase.RETRYING,
        attempt=attempt,
        delay=policy.delay_for(attempt),
        last_error=error,
    )
