"""
FastAPI websocket relay.

Every connected client gets an identity; each frame it sends is validated,
stamped with that identity and forwarded to all other open clients.  The relay
does not pair clients: with exactly two connected peers, broadcast-to-others
is point-to-point.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
from typing import Dict, List, Optional, Union

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from ..config import RelaySettings
from .schemas import Envelope, MalformedSignal, parse_signal

LOG = logging.getLogger(__name__)


class RelayConnection:
    """Track per-connection state and orchestrate send/receive loops."""

    def __init__(self, hub: "RelayHub", websocket: WebSocket, *, queue_size: int) -> None:
        self.hub = hub
        self.websocket = websocket
        self.identity: Optional[str] = None
        self.send_queue: asyncio.Queue[str] = asyncio.Queue(maxsize=max(1, int(queue_size)))
        self._stop_event = asyncio.Event()
        self._closing = False
        self.logger = LOG.getChild("conn")

    @property
    def is_open(self) -> bool:
        return not self._stop_event.is_set()

    async def run(self) -> None:
        try:
            await self.websocket.accept()
        except Exception:  # pragma: no cover
            LOG.exception("Failed to accept WebSocket connection")
            return

        await self.hub.on_connect(self)
        self.logger = LOG.getChild(f"conn.{self.identity}")
        try:
            async with asyncio.TaskGroup() as task_group:
                task_group.create_task(self._recv_loop())
                task_group.create_task(self._send_loop())
        except asyncio.CancelledError:
            raise
        except Exception:  # pragma: no cover
            self.logger.exception("Relay connection crashed")
        finally:
            await self.hub.on_disconnect(self.identity)
            await self.close(code=1000)

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        if self._closing:
            return
        self._closing = True
        self._stop_event.set()
        with contextlib.suppress(RuntimeError, WebSocketDisconnect):
            await self.websocket.close(code=code, reason=reason)

    async def send(self, text: str) -> bool:
        """
        Queue ``text`` for delivery.

        Never waits on the client: when the queue is full the frame is dropped
        for this connection only.
        """

        if not self.is_open:
            return False
        try:
            self.send_queue.put_nowait(text)
        except asyncio.QueueFull:
            self.logger.warning("Dropping frame due to backpressure")
            return False
        return True

    async def _recv_loop(self) -> None:
        try:
            while self.is_open:
                try:
                    message = await self.websocket.receive()
                except asyncio.CancelledError:
                    raise
                except (WebSocketDisconnect, RuntimeError):
                    break

                if message.get("type") == "websocket.disconnect":
                    break

                raw: Union[str, bytes, None] = message.get("text")
                if raw is None:
                    raw = message.get("bytes")
                if raw is None:
                    continue

                try:
                    await self.hub.on_message(self.identity, raw)
                except asyncio.CancelledError:
                    raise
                except Exception:  # pragma: no cover - guard rails
                    self.logger.exception("Unhandled error while relaying frame")
        finally:
            self._stop_event.set()

    async def _send_loop(self) -> None:
        try:
            while self.is_open:
                try:
                    outbound = await asyncio.wait_for(self.send_queue.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    continue

                try:
                    await self.websocket.send_text(outbound)
                except asyncio.CancelledError:
                    raise
                except WebSocketDisconnect:
                    break
                except RuntimeError as exc:
                    message = str(exc)
                    if "close message has been sent" in message:
                        self.logger.debug("Send after close ignored: %s", message)
                    else:
                        self.logger.exception("Failed to send frame", exc_info=exc)
                    break
                except Exception:
                    self.logger.exception("Failed to send frame")
                    break
                finally:
                    self.send_queue.task_done()
        finally:
            self._stop_event.set()


class RelayHub:
    """Connection registry plus broadcast-to-others routing."""

    def __init__(self, *, queue_size: int = 256) -> None:
        self.queue_size = max(1, int(queue_size))
        self._connections: Dict[str, RelayConnection] = {}
        self._identities = itertools.count(1)
        self._lock = asyncio.Lock()

    @property
    def client_count(self) -> int:
        return len(self._connections)

    def identities(self) -> List[str]:
        return list(self._connections)

    async def run(self, websocket: WebSocket) -> None:
        connection = RelayConnection(self, websocket, queue_size=self.queue_size)
        await connection.run()

    async def on_connect(self, connection: RelayConnection) -> str:
        async with self._lock:
            identity = str(next(self._identities))
            connection.identity = identity
            self._connections[identity] = connection
        LOG.info("Client connected: %s", identity)
        return identity

    async def on_disconnect(self, identity: Optional[str]) -> None:
        if identity is None:
            return
        async with self._lock:
            removed = self._connections.pop(identity, None)
        if removed is not None:
            LOG.info("Client disconnected: %s", identity)

    async def on_message(self, sender: str, raw: Union[str, bytes]) -> int:
        """
        Validate ``raw`` and forward it to every other open connection.

        Returns the number of connections the envelope was handed to.
        Malformed frames are logged and dropped.
        """

        try:
            signal = parse_signal(raw)
        except MalformedSignal as exc:
            LOG.warning("Dropping malformed frame from %s: %s", sender, exc)
            return 0

        LOG.debug("Received %s from %s", signal.type.value, sender)
        envelope = Envelope(type=signal.type, data=signal.data, sender=sender)
        return await self.broadcast(envelope, exclude=sender)

    async def broadcast(self, envelope: Envelope, *, exclude: Optional[str] = None) -> int:
        async with self._lock:
            targets = [
                connection
                for identity, connection in self._connections.items()
                if identity != exclude
            ]

        targets = [connection for connection in targets if connection.is_open]
        if not targets:
            return 0

        text = envelope.to_wire()
        results = await asyncio.gather(
            *[target.send(text) for target in targets],
            return_exceptions=True,
        )

        delivered = 0
        for target, result in zip(targets, results):
            if isinstance(result, BaseException):
                LOG.error(
                    "Failed to forward %s to %s: %s",
                    envelope.type.value,
                    target.identity,
                    result,
                )
            elif result is not False:
                delivered += 1
        return delivered


def create_app(
    *,
    hub: Optional[RelayHub] = None,
    settings: Optional[RelaySettings] = None,
) -> FastAPI:
    relay_settings = settings or RelaySettings()
    relay_hub = hub or RelayHub(queue_size=relay_settings.queue_size)

    app = FastAPI(title="peercall relay")
    app.state.hub = relay_hub
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.websocket("/")
    async def websocket_root(websocket: WebSocket) -> None:
        await relay_hub.run(websocket)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        await relay_hub.run(websocket)

    @app.get("/healthz")
    async def healthz() -> dict:
        return {"status": "ok", "clients": relay_hub.client_count}

    return app


__all__ = ["RelayConnection", "RelayHub", "create_app"]
