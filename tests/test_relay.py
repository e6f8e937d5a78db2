"""Tests covering relay registration and broadcast-to-others routing."""

from __future__ import annotations

import asyncio
import json
import time
from typing import List, Optional

from fastapi.testclient import TestClient

from peercall.relay.schemas import Envelope, SignalKind
from peercall.relay.server import RelayHub, create_app


class FakeConnection:
    def __init__(self, *, fail: bool = False) -> None:
        self.identity: Optional[str] = None
        self.is_open = True
        self.fail = fail
        self.sent: List[dict] = []

    async def send(self, text: str) -> bool:
        if self.fail:
            raise ConnectionResetError("peer went away")
        self.sent.append(json.loads(text))
        return True


def test_identities_are_unique_and_sequential() -> None:
    async def scenario() -> List[str]:
        hub = RelayHub()
        connections = [FakeConnection() for _ in range(3)]
        return [await hub.on_connect(connection) for connection in connections]

    assert asyncio.run(scenario()) == ["1", "2", "3"]


def test_offer_is_forwarded_to_other_client_with_sender_identity() -> None:
    async def scenario():
        hub = RelayHub()
        a, b = FakeConnection(), FakeConnection()
        await hub.on_connect(a)
        await hub.on_connect(b)
        delivered = await hub.on_message(a.identity, '{"type":"offer","data":"O1"}')
        return a, b, delivered

    a, b, delivered = asyncio.run(scenario())

    assert delivered == 1
    assert b.sent == [{"type": "offer", "data": "O1", "from": "1"}]
    assert a.sent == []


def test_sender_supplied_from_is_overwritten() -> None:
    async def scenario():
        hub = RelayHub()
        a, b = FakeConnection(), FakeConnection()
        await hub.on_connect(a)
        await hub.on_connect(b)
        await hub.on_message(b.identity, '{"type":"answer","data":{"sdp":"x"},"from":"1"}')
        return a

    a = asyncio.run(scenario())

    assert a.sent == [{"type": "answer", "data": {"sdp": "x"}, "from": "2"}]


def test_malformed_frames_are_dropped() -> None:
    async def scenario():
        hub = RelayHub()
        a, b = FakeConnection(), FakeConnection()
        await hub.on_connect(a)
        await hub.on_connect(b)
        results = [
            await hub.on_message(a.identity, "not json"),
            await hub.on_message(a.identity, "[1, 2]"),
            await hub.on_message(a.identity, '{"type":"bye","data":1}'),
            await hub.on_message(a.identity, b"\xff\xfe"),
        ]
        return hub, b, results

    hub, b, results = asyncio.run(scenario())

    assert results == [0, 0, 0, 0]
    assert b.sent == []
    assert hub.identities() == ["1", "2"]


def test_failing_recipient_does_not_block_others() -> None:
    async def scenario():
        hub = RelayHub()
        sender = FakeConnection()
        healthy = [FakeConnection(), FakeConnection()]
        broken = FakeConnection(fail=True)
        for connection in (sender, healthy[0], broken, healthy[1]):
            await hub.on_connect(connection)
        delivered = await hub.on_message(sender.identity, '{"type":"ice-candidate","data":"c1"}')
        return healthy, delivered

    healthy, delivered = asyncio.run(scenario())

    assert delivered == 2
    for connection in healthy:
        assert connection.sent == [{"type": "ice-candidate", "data": "c1", "from": "1"}]


def test_closed_and_disconnected_clients_are_skipped() -> None:
    async def scenario():
        hub = RelayHub()
        a, b, c = FakeConnection(), FakeConnection(), FakeConnection()
        for connection in (a, b, c):
            await hub.on_connect(connection)
        c.is_open = False
        await hub.on_disconnect(b.identity)
        await hub.on_disconnect(b.identity)
        delivered = await hub.on_message(a.identity, '{"type":"offer","data":"O1"}')
        return hub, b, c, delivered

    hub, b, c, delivered = asyncio.run(scenario())

    assert delivered == 0
    assert b.sent == [] and c.sent == []
    assert hub.identities() == ["1", "3"]


def test_never_echoes_back_to_sender_under_churn() -> None:
    async def scenario():
        hub = RelayHub()
        connections = [FakeConnection() for _ in range(4)]
        for connection in connections:
            await hub.on_connect(connection)
        await hub.on_disconnect(connections[1].identity)
        for connection in connections:
            await hub.on_message(connection.identity, '{"type":"offer","data":"x"}')
        late = FakeConnection()
        await hub.on_connect(late)
        await hub.on_message(late.identity, '{"type":"answer","data":"y"}')
        return connections + [late]

    for connection in asyncio.run(scenario()):
        assert all(message["from"] != connection.identity for message in connection.sent)


def test_envelope_wire_format() -> None:
    envelope = Envelope(type=SignalKind.ICE_CANDIDATE, data={"candidate": "c"}, sender="7")

    assert json.loads(envelope.to_wire()) == {
        "type": "ice-candidate",
        "data": {"candidate": "c"},
        "from": "7",
    }
    assert list(json.loads(envelope.to_wire())) == ["type", "data", "from"]


def _wait_for_clients(client: TestClient, expected: int) -> None:
    deadline = time.monotonic() + 5.0
    while time.monotonic() < deadline:
        if client.get("/healthz").json()["clients"] == expected:
            return
        time.sleep(0.01)
    raise AssertionError(f"relay never reached {expected} clients")


def test_websocket_relay_end_to_end() -> None:
    app = create_app()

    with TestClient(app) as client:
        with client.websocket_connect("/") as first:
            _wait_for_clients(client, 1)
            with client.websocket_connect("/") as second:
                _wait_for_clients(client, 2)

                first.send_text("garbage")
                first.send_text(json.dumps({"type": "offer", "data": "O1"}))
                assert json.loads(second.receive_text()) == {
                    "type": "offer",
                    "data": "O1",
                    "from": "1",
                }

                second.send_text(json.dumps({"type": "answer", "data": "A1"}))
                assert json.loads(first.receive_text()) == {
                    "type": "answer",
                    "data": "A1",
                    "from": "2",
                }
            _wait_for_clients(client, 1)

        health = client.get("/healthz").json()
        assert health["status"] == "ok"
