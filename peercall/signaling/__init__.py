"""
Peer-side signaling: relay connection and signal dispatch.
"""

from __future__ import annotations

from .client import SignalingClient
from .registry import SignalCallback, SignalRegistry

__all__ = ["SignalCallback", "SignalRegistry", "SignalingClient"]
