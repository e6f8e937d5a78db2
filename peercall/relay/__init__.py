"""
Websocket relay that fans signaling frames out to the other connected peers.
"""

from __future__ import annotations

from .schemas import Envelope, MalformedSignal, SignalKind, SignalMessage, parse_envelope, parse_signal
from .server import RelayConnection, RelayHub, create_app

__all__ = [
    "Envelope",
    "MalformedSignal",
    "RelayConnection",
    "RelayHub",
    "SignalKind",
    "SignalMessage",
    "create_app",
    "parse_envelope",
    "parse_signal",
]
