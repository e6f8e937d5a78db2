"""
WebRTC negotiation: media capability seam and the per-peer coordinator.
"""

from __future__ import annotations

from .coordinator import (
    CallRole,
    CallState,
    MediaAcquisitionError,
    NegotiationCoordinator,
    NegotiationError,
    NegotiationSession,
    NegotiationStateError,
)
from .media import AiortcMediaCapability, LocalMedia, MediaCapability, PeerHandle

__all__ = [
    "AiortcMediaCapability",
    "CallRole",
    "CallState",
    "LocalMedia",
    "MediaAcquisitionError",
    "MediaCapability",
    "NegotiationCoordinator",
    "NegotiationError",
    "NegotiationSession",
    "NegotiationStateError",
    "PeerHandle",
]
