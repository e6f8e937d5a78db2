"""
Typed publish/subscribe registry for relayed signals.
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Union

from ..relay.schemas import Envelope, SignalKind

LOG = logging.getLogger(__name__)

SignalCallback = Callable[[Any], Union[None, Awaitable[None]]]


class SignalRegistry:
    """
    Map each :class:`SignalKind` to an ordered set of subscribers.

    ``subscribe`` hands back an integer token; keep it and pass it to
    ``unsubscribe`` when the subscriber goes away.  Subscribers receive the
    envelope's ``data`` and may be plain functions or coroutine functions.
    """

    def __init__(self) -> None:
        self._counter = 0
        self._subscribers: Dict[SignalKind, Dict[int, SignalCallback]] = {
            kind: {} for kind in SignalKind
        }

    def subscribe(self, kind: Union[SignalKind, str], callback: SignalCallback) -> int:
        if not callable(callback):
            raise TypeError("callback must be callable")
        signal_kind = SignalKind(kind)
        self._counter += 1
        token = self._counter
        self._subscribers[signal_kind][token] = callback
        return token

    def unsubscribe(self, token: int) -> bool:
        for subscribers in self._subscribers.values():
            if subscribers.pop(token, None) is not None:
                return True
        return False

    def count(self, kind: Optional[Union[SignalKind, str]] = None) -> int:
        if kind is None:
            return sum(len(subscribers) for subscribers in self._subscribers.values())
        return len(self._subscribers[SignalKind(kind)])

    async def dispatch(self, envelope: Envelope) -> int:
        """
        Deliver ``envelope.data`` to every subscriber of ``envelope.type``.

        A failing subscriber is logged and skipped.  Returns the number of
        subscribers that completed without raising.
        """

        callbacks: Tuple[Tuple[int, SignalCallback], ...] = tuple(
            self._subscribers[envelope.type].items()
        )
        if not callbacks:
            LOG.debug("No subscribers for %s from %s", envelope.type.value, envelope.sender)
            return 0

        delivered = 0
        for token, callback in callbacks:
            try:
                result = callback(envelope.data)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                LOG.exception("Subscriber %s failed handling %s.", token, envelope.type.value)
                continue
            delivered += 1
        return delivered


__all__ = ["SignalCallback", "SignalRegistry"]
