"""
Peer-side connection to the relay.

One :class:`SignalingClient` is created per peer process and handed to the
negotiation coordinator.  It keeps the websocket alive with a capped linear
backoff and dispatches relayed envelopes through a :class:`SignalRegistry`.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Optional, Union

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..relay.schemas import MalformedSignal, SignalKind, SignalMessage, parse_envelope
from .registry import SignalCallback, SignalRegistry

LOG = logging.getLogger(__name__)

SleepCallable = Callable[[float], Awaitable[None]]


class SignalingClient:
    def __init__(
        self,
        url: str,
        *,
        registry: Optional[SignalRegistry] = None,
        max_reconnect_attempts: int = 5,
        reconnect_delay: float = 1.0,
        connect: Optional[Callable[[str], Any]] = None,
        sleep: Optional[SleepCallable] = None,
    ) -> None:
        self.url = url
        self.registry = registry or SignalRegistry()
        self.max_reconnect_attempts = max(0, int(max_reconnect_attempts))
        self.reconnect_delay = max(0.0, float(reconnect_delay))
        self._connect = connect or ws_connect
        self._sleep: SleepCallable = sleep or asyncio.sleep
        self._websocket = None
        self._connected = asyncio.Event()
        self._closed = False
        self.reconnect_attempts = 0

    @property
    def connected(self) -> bool:
        return self._websocket is not None

    def on_signal(self, kind: Union[SignalKind, str], callback: SignalCallback) -> int:
        return self.registry.subscribe(kind, callback)

    def remove_signal(self, token: int) -> bool:
        return self.registry.unsubscribe(token)

    async def wait_connected(self, timeout: Optional[float] = None) -> bool:
        try:
            await asyncio.wait_for(self._connected.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def send_signal(self, kind: Union[SignalKind, str], data: Any) -> bool:
        """
        Send ``{"type": kind, "data": data}`` to the relay.

        Returns ``False`` when the relay is unreachable; the frame is dropped,
        not queued.
        """

        message = SignalMessage(type=SignalKind(kind), data=data)
        websocket = self._websocket
        if websocket is None:
            LOG.error("Relay is not connected; dropping %s", message.type.value)
            return False
        try:
            await websocket.send(json.dumps(message.model_dump(mode="json")))
        except ConnectionClosed as exc:
            LOG.error("Relay connection closed while sending %s: %s", message.type.value, exc)
            return False
        return True

    async def run(self) -> None:
        """
        Connect and pump inbound frames until :meth:`close` is called or the
        reconnect budget is exhausted.

        A successful connection resets the attempt counter; after a drop the
        n-th retry waits ``n * reconnect_delay`` seconds.
        """

        while not self._closed:
            try:
                async with self._connect(self.url) as websocket:
                    self._websocket = websocket
                    self.reconnect_attempts = 0
                    self._connected.set()
                    LOG.info("Connected to signaling server %s", self.url)
                    await self._receive(websocket)
                    LOG.info("Disconnected from signaling server")
            except ConnectionClosed as exc:
                LOG.info("Disconnected from signaling server: %s", exc)
            except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
                LOG.warning("Could not reach signaling server %s: %s", self.url, exc)
            finally:
                self._websocket = None
                self._connected.clear()

            if self._closed:
                break
            if self.reconnect_attempts >= self.max_reconnect_attempts:
                LOG.error(
                    "Giving up on signaling server after %d attempts",
                    self.reconnect_attempts,
                )
                break
            self.reconnect_attempts += 1
            delay = self.reconnect_delay * self.reconnect_attempts
            LOG.info("Reconnecting in %.1fs (attempt %d)", delay, self.reconnect_attempts)
            await self._sleep(delay)

    async def _receive(self, websocket) -> None:
        """
        Dispatch each relayed envelope before reading the next one.

        Subscribers run inline, so envelopes reach them in relay order.  A slow
        subscriber, such as an ``answer_call`` that is still acquiring media and
        gathering candidates, pauses reading until it returns; frames that
        arrive meanwhile wait in the websocket buffer.
        """

        async for raw in websocket:
            try:
                envelope = parse_envelope(raw)
            except MalformedSignal as exc:
                LOG.warning("Error processing message: %s", exc)
                continue
            await self.registry.dispatch(envelope)

    async def close(self) -> None:
        self._closed = True
        websocket = self._websocket
        if websocket is not None:
            await websocket.close()


__all__ = ["SignalingClient"]
