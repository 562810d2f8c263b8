"""Topic filter matching and subscription routing.

The router owns the set of active topic filters. It is the only component
that talks to the broker about subscriptions, and it keeps enough state to
replay every filter after a reconnect.
"""

from __future__ import annotations

import itertools
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

_logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes], None]


class BrokerConnection(Protocol):
    """Broker-side subscription interface used by :class:`TopicRouter`.

    Implementations must tolerate being called while disconnected (the
    router replays every filter once the connection is back).
    """

    def subscribe(self, topic_filter: str) -> None: ...

    def unsubscribe(self, topic_filter: str) -> None: ...


def validate_topic_filter(topic_filter: str) -> None:
    """Raise :class:`ValueError` if *topic_filter* is not a valid MQTT filter."""
    if not topic_filter:
        raise ValueError("topic filter must be non-empty")
    levels = topic_filter.split("/")
    for index, level in enumerate(levels):
        if "#" in level:
            if level != "#":
                raise ValueError(f"'#' must occupy a whole topic level: {topic_filter!r}")
            if index != len(levels) - 1:
                raise ValueError(f"'#' must be the last topic level: {topic_filter!r}")
        if "+" in level and level != "+":
            raise ValueError(f"'+' must occupy a whole topic level: {topic_filter!r}")


def topic_matches(topic_filter: str, topic: str) -> bool:
    """Return True if *topic* is matched by *topic_filter*.

    ``+`` matches exactly one level, ``#`` matches zero or more trailing
    levels (``a/#`` also matches ``a``). Topics starting with ``$`` are only
    matched by filters that name the ``$`` level explicitly.
    """
    if topic.startswith("$") and topic_filter[:1] in {"+", "#"}:
        return False

    filter_levels = topic_filter.split("/")
    topic_levels = topic.split("/")

    for index, pattern in enumerate(filter_levels):
        if pattern == "#":
            return True
        if index >= len(topic_levels):
            return False
        if pattern != "+" and pattern != topic_levels[index]:
            return False

    return len(filter_levels) == len(topic_levels)


@dataclass(frozen=True, slots=True)
class SubscriptionHandle:
    """Opaque token returned by :meth:`TopicRouter.subscribe`."""

    id: int
    topic_filter: str


class TopicRouter:
    """Dispatch broker messages to handlers registered by topic filter.

    Usage::

        router = TopicRouter(broker)
        handle = router.subscribe("zigbee2mqtt/+", on_message)
        router.dispatch("zigbee2mqtt/door", b'{"contact": true}')
    """

    def __init__(self, broker: BrokerConnection | None = None) -> None:
        self._broker = broker
        self._handlers: dict[int, tuple[str, MessageHandler]] = {}
        self._refcounts: dict[str, int] = {}
        self._ids = itertools.count(1)

    @property
    def active_filters(self) -> frozenset[str]:
        """Filters with at least one registered handler."""
        return frozenset(self._refcounts)

    def attach(self, broker: BrokerConnection) -> None:
        """Bind a broker connection and subscribe every active filter on it."""
        self._broker = broker
        self.replay()

    def subscribe(self, topic_filter: str, handler: MessageHandler) -> SubscriptionHandle:
        """Register *handler* for messages matching *topic_filter*."""
        validate_topic_filter(topic_filter)
        handle = SubscriptionHandle(id=next(self._ids), topic_filter=topic_filter)
        self._handlers[handle.id] = (topic_filter, handler)

        count = self._refcounts.get(topic_filter, 0)
        self._refcounts[topic_filter] = count + 1
        if count == 0 and self._broker is not None:
            _logger.debug("Broker subscribe filter=%s", topic_filter)
            self._broker.subscribe(topic_filter)
        return handle

    def unsubscribe(self, handle: SubscriptionHandle) -> None:
        """Remove a handler. Unknown or already removed handles are ignored."""
        entry = self._handlers.pop(handle.id, None)
        if entry is None:
            return
        topic_filter = entry[0]
        count = self._refcounts.get(topic_filter, 0) - 1
        if count > 0:
            self._refcounts[topic_filter] = count
            return
        self._refcounts.pop(topic_filter, None)
        if self._broker is not None:
            _logger.debug("Broker unsubscribe filter=%s", topic_filter)
            self._broker.unsubscribe(topic_filter)

    def replay(self) -> None:
        """Re-issue every active filter on the broker (after (re)connect)."""
        if self._broker is None:
            return
        for topic_filter in sorted(self._refcounts):
            self._broker.subscribe(topic_filter)
        _logger.debug("Replayed %d subscriptions", len(self._refcounts))

    def dispatch(self, topic: str, payload: bytes) -> int:
        """Invoke every handler whose filter matches *topic*.

        A failing handler is logged and skipped; the remaining handlers still
        run. Returns the number of handlers invoked.
        """
        invoked = 0
        # Snapshot: handlers may (un)subscribe while we iterate.
        for handle_id, (topic_filter, handler) in list(self._handlers.items()):
            if not topic_matches(topic_filter, topic):
                continue
            invoked += 1
            try:
                handler(topic, payload)
            except Exception:
                _logger.exception(
                    "Handler failed topic=%s filter=%s handle=%d",
                    topic,
                    topic_filter,
                    handle_id,
                )
        if invoked == 0:
            _logger.debug("No handler for topic=%s", topic)
        return invoked
