from __future__ import annotations

import logging

import pytest

from pysensync.topics import TopicRouter, topic_matches, validate_topic_filter


class _FakeBroker:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []

    def subscribe(self, topic_filter: str) -> None:
        self.calls.append(("subscribe", topic_filter))

    def unsubscribe(self, topic_filter: str) -> None:
        self.calls.append(("unsubscribe", topic_filter))


@pytest.mark.parametrize(
    ("topic_filter", "topic", "expected"),
    [
        ("zigbee2mqtt/+", "zigbee2mqtt/device1", True),
        ("zigbee2mqtt/+", "zigbee2mqtt/device1/state", False),
        ("zigbee2mqtt/#", "zigbee2mqtt/device1/state", True),
        ("zigbee2mqtt/#", "zigbee2mqtt", True),
        ("zigbee2mqtt/door", "zigbee2mqtt/door", True),
        ("zigbee2mqtt/door", "zigbee2mqtt/window", False),
        ("+/+/state", "zigbee2mqtt/door/state", True),
        ("#", "$SYS/broker/uptime", False),
        ("+/broker/uptime", "$SYS/broker/uptime", False),
        ("$SYS/#", "$SYS/broker/uptime", True),
    ],
)
def test_topic_matches(topic_filter: str, topic: str, expected: bool) -> None:
    assert topic_matches(topic_filter, topic) is expected


@pytest.mark.parametrize("topic_filter", ["", "a/#/b", "a/b#", "a/+b", "a#"])
def test_validate_topic_filter_rejects_invalid(topic_filter: str) -> None:
    with pytest.raises(ValueError):
        validate_topic_filter(topic_filter)


def test_wildcard_subscription_dispatch() -> None:
    router = TopicRouter()
    plus_hits: list[str] = []
    hash_hits: list[str] = []
    router.subscribe("zigbee2mqtt/+", lambda topic, _payload: plus_hits.append(topic))
    router.subscribe("zigbee2mqtt/#", lambda topic, _payload: hash_hits.append(topic))

    assert router.dispatch("zigbee2mqtt/device1", b"{}") == 2
    assert plus_hits == ["zigbee2mqtt/device1"]

    assert router.dispatch("zigbee2mqtt/device1/state", b"{}") == 1
    assert plus_hits == ["zigbee2mqtt/device1"]
    assert hash_hits == ["zigbee2mqtt/device1", "zigbee2mqtt/device1/state"]


def test_failing_handler_does_not_stop_dispatch(caplog: pytest.LogCaptureFixture) -> None:
    router = TopicRouter()
    seen: list[str] = []

    def boom(_topic: str, _payload: bytes) -> None:
        raise RuntimeError("handler exploded")

    router.subscribe("sensors/#", boom)
    router.subscribe("sensors/+", lambda topic, _payload: seen.append(topic))

    with caplog.at_level(logging.ERROR, logger="pysensync.topics"):
        invoked = router.dispatch("sensors/door", b"1")

    assert invoked == 2
    assert seen == ["sensors/door"]
    assert "Handler failed" in caplog.text


def test_broker_subscribe_is_reference_counted() -> None:
    broker = _FakeBroker()
    router = TopicRouter(broker)

    first = router.subscribe("zigbee2mqtt/+", lambda *_: None)
    second = router.subscribe("zigbee2mqtt/+", lambda *_: None)
    assert broker.calls == [("subscribe", "zigbee2mqtt/+")]

    router.unsubscribe(first)
    assert broker.calls == [("subscribe", "zigbee2mqtt/+")]
    assert router.active_filters == frozenset({"zigbee2mqtt/+"})

    router.unsubscribe(second)
    assert broker.calls[-1] == ("unsubscribe", "zigbee2mqtt/+")
    assert router.active_filters == frozenset()

    # Unknown/stale handles are ignored.
    router.unsubscribe(second)
    assert len(broker.calls) == 2


def test_replay_resubscribes_every_active_filter() -> None:
    router = TopicRouter()
    router.subscribe("b/#", lambda *_: None)
    router.subscribe("a/+", lambda *_: None)
    router.subscribe("a/+", lambda *_: None)

    broker = _FakeBroker()
    router.attach(broker)
    assert broker.calls == [("subscribe", "a/+"), ("subscribe", "b/#")]

    broker.calls.clear()
    router.replay()
    assert broker.calls == [("subscribe", "a/+"), ("subscribe", "b/#")]


def test_handler_may_unsubscribe_during_dispatch() -> None:
    router = TopicRouter()
    hits: list[str] = []
    handles = []

    def once(topic: str, _payload: bytes) -> None:
        hits.append(topic)
        router.unsubscribe(handles[0])

    handles.append(router.subscribe("x/#", once))
    router.dispatch("x/1", b"")
    router.dispatch("x/2", b"")
    assert hits == ["x/1"]
