"""
peercall: two-party WebRTC call signaling.

The package hosts the websocket relay that fans signaling frames out between
connected clients (:mod:`peercall.relay`) and the peer-side pieces that drive
offer/answer negotiation over it (:mod:`peercall.signaling`,
:mod:`peercall.rtc`).
"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
