"""Tests covering typed signal subscription and dispatch."""

import asyncio

import pytest

from peercall.relay.schemas import Envelope, SignalKind
from peercall.signaling.registry import SignalRegistry


def _envelope(kind: SignalKind, data) -> Envelope:
    return Envelope(type=kind, data=data, sender="1")


def test_dispatch_routes_by_type_in_subscription_order() -> None:
    registry = SignalRegistry()
    received = []

    async def on_offer(data) -> None:
        received.append(("async", data))

    registry.subscribe(SignalKind.OFFER, lambda data: received.append(("sync", data)))
    registry.subscribe("offer", on_offer)
    registry.subscribe(SignalKind.ANSWER, lambda data: received.append(("answer", data)))

    delivered = asyncio.run(registry.dispatch(_envelope(SignalKind.OFFER, "O1")))

    assert delivered == 2
    assert received == [("sync", "O1"), ("async", "O1")]


def test_unsubscribe_stops_delivery() -> None:
    registry = SignalRegistry()
    received = []

    token = registry.subscribe(SignalKind.ICE_CANDIDATE, received.append)
    asyncio.run(registry.dispatch(_envelope(SignalKind.ICE_CANDIDATE, "c1")))
    assert registry.unsubscribe(token) is True
    assert registry.unsubscribe(token) is False
    asyncio.run(registry.dispatch(_envelope(SignalKind.ICE_CANDIDATE, "c2")))

    assert received == ["c1"]
    assert registry.count() == 0


def test_failing_subscriber_does_not_block_others() -> None:
    registry = SignalRegistry()
    received = []

    def broken(data) -> None:
        raise RuntimeError("boom")

    registry.subscribe(SignalKind.OFFER, broken)
    registry.subscribe(SignalKind.OFFER, received.append)

    delivered = asyncio.run(registry.dispatch(_envelope(SignalKind.OFFER, "O1")))

    assert delivered == 1
    assert received == ["O1"]


def test_subscribe_rejects_unknown_kind_and_non_callables() -> None:
    registry = SignalRegistry()

    with pytest.raises(ValueError):
        registry.subscribe("hangup", print)
    with pytest.raises(TypeError):
        registry.subscribe(SignalKind.OFFER, "not callable")  # type: ignore[arg-type]
