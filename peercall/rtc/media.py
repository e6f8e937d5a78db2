"""
Media capability seam.

The coordinator only talks to :class:`MediaCapability` and :class:`PeerHandle`.
:class:`AiortcMediaCapability` realises both with aiortc; tests substitute
in-memory fakes.

Session descriptions travel as ``{"type": ..., "sdp": ...}`` dicts and ICE
candidates as ``{"candidate": ..., "sdpMid": ..., "sdpMLineIndex": ...}``
dicts, the same shapes a browser puts on the wire.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any, Callable, Dict, List, Optional, Sequence

from aiortc import (
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaPlayer
from aiortc.mediastreams import AudioStreamTrack, MediaStreamTrack, VideoStreamTrack
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

LOG = logging.getLogger(__name__)

Description = Dict[str, Any]
Candidate = Dict[str, Any]

EVENT_ICE_CANDIDATE = "icecandidate"
EVENT_TRACK = "track"


class LocalMedia:
    """Local audio/video tracks acquired for one call."""

    def __init__(self, tracks: Sequence[Any]) -> None:
        self.tracks: List[Any] = list(tracks)
        self.stopped = False

    def stop(self) -> None:
        if self.stopped:
            return
        self.stopped = True
        for track in self.tracks:
            try:
                track.stop()
            except Exception:  # pragma: no cover - track implementations vary
                LOG.exception("Failed to stop local track %r", track)


class PeerHandle:
    """
    Base class for a single negotiation handle (one peer connection).
    """

    def add_local_media(self, media: LocalMedia) -> None:
        raise NotImplementedError

    def on(self, event: str, callback: Callable[[Any], Any]) -> None:
        """
        Register ``callback`` for ``icecandidate`` (called with a candidate
        dict) or ``track`` (called with the remote track).
        """

        raise NotImplementedError

    async def create_offer(self) -> Description:
        raise NotImplementedError

    async def create_answer(self) -> Description:
        raise NotImplementedError

    async def set_local_description(self, description: Description) -> Description:
        """Commit ``description`` and return what was actually committed."""

        raise NotImplementedError

    async def set_remote_description(self, description: Description) -> None:
        raise NotImplementedError

    async def add_candidate(self, candidate: Candidate) -> None:
        raise NotImplementedError

    async def get_stats(self) -> List[Dict[str, Any]]:
        """
        Return the current statistics reports as plain dicts, each with at
        least a ``type`` key (``inbound-rtp``, ``transport``, ...).
        """

        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


class MediaCapability:
    """
    Base class for the external media stack.
    """

    async def acquire_local_media(self) -> LocalMedia:
        raise NotImplementedError

    def create_handle(self, ice_servers: Sequence[str]) -> PeerHandle:
        raise NotImplementedError


def description_to_dict(description: RTCSessionDescription) -> Description:
    return {"type": description.type, "sdp": description.sdp}


def description_from_dict(payload: Description) -> RTCSessionDescription:
    if not isinstance(payload, dict) or "sdp" not in payload or "type" not in payload:
        raise ValueError(f"not a session description: {payload!r}")
    return RTCSessionDescription(sdp=payload["sdp"], type=payload["type"])


def candidate_to_dict(candidate) -> Candidate:
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


def candidate_from_dict(payload: Candidate):
    if not isinstance(payload, dict) or not payload.get("candidate"):
        raise ValueError(f"not an ICE candidate: {payload!r}")
    line = str(payload["candidate"])
    if line.startswith("candidate:"):
        line = line[len("candidate:"):]
    candidate = candidate_from_sdp(line)
    candidate.sdpMid = payload.get("sdpMid")
    candidate.sdpMLineIndex = payload.get("sdpMLineIndex")
    return candidate


def build_configuration(ice_servers: Sequence[str]) -> RTCConfiguration:
    return RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in ice_servers])


class AiortcPeerHandle(PeerHandle):
    """
    :class:`PeerHandle` backed by :class:`aiortc.RTCPeerConnection`.

    Candidates added before a remote description is known are held back and
    applied right after :meth:`set_remote_description`.
    """

    def __init__(self, ice_servers: Sequence[str]) -> None:
        self.pc = RTCPeerConnection(configuration=build_configuration(ice_servers))
        self._early_candidates: List[Candidate] = []

    def add_local_media(self, media: LocalMedia) -> None:
        for track in media.tracks:
            self.pc.addTrack(track)

    def on(self, event: str, callback: Callable[[Any], Any]) -> None:
        if event == EVENT_ICE_CANDIDATE:

            def _forward_candidate(candidate) -> Any:
                if candidate is None:
                    return None
                return callback(candidate_to_dict(candidate))

            self.pc.on(EVENT_ICE_CANDIDATE, _forward_candidate)
        elif event == EVENT_TRACK:
            self.pc.on(EVENT_TRACK, callback)
        else:
            raise ValueError(f"unsupported event: {event!r}")

    async def create_offer(self) -> Description:
        return description_to_dict(await self.pc.createOffer())

    async def create_answer(self) -> Description:
        return description_to_dict(await self.pc.createAnswer())

    async def set_local_description(self, description: Description) -> Description:
        await self.pc.setLocalDescription(description_from_dict(description))
        # aiortc gathers candidates while committing and embeds them in the SDP.
        return description_to_dict(self.pc.localDescription)

    async def set_remote_description(self, description: Description) -> None:
        await self.pc.setRemoteDescription(description_from_dict(description))
        early, self._early_candidates = self._early_candidates, []
        for candidate in early:
            await self.pc.addIceCandidate(candidate_from_dict(candidate))

    async def add_candidate(self, candidate: Candidate) -> None:
        if self.pc.remoteDescription is None:
            candidate_from_dict(candidate)
            self._early_candidates.append(candidate)
            return
        await self.pc.addIceCandidate(candidate_from_dict(candidate))

    async def get_stats(self) -> List[Dict[str, Any]]:
        report = await self.pc.getStats()
        return [asdict(stats) for stats in report.values()]

    async def close(self) -> None:
        self._early_candidates = []
        await self.pc.close()


class AiortcMediaCapability(MediaCapability):
    """
    Local media from a capture device via :class:`MediaPlayer`, or synthetic
    silence and blank frames when no device is configured.
    """

    def __init__(
        self,
        *,
        device: Optional[str] = None,
        format: Optional[str] = None,
        options: Optional[Dict[str, str]] = None,
    ) -> None:
        self.device = device
        self.format = format
        self.options = dict(options or {})

    async def acquire_local_media(self) -> LocalMedia:
        if self.device is None:
            tracks: List[MediaStreamTrack] = [AudioStreamTrack(), VideoStreamTrack()]
            return LocalMedia(tracks)

        player = MediaPlayer(self.device, format=self.format, options=self.options)
        tracks = [track for track in (player.audio, player.video) if track is not None]
        if not tracks:
            raise RuntimeError(f"device {self.device!r} produced no audio or video track")
        return LocalMedia(tracks)

    def create_handle(self, ice_servers: Sequence[str]) -> PeerHandle:
        return AiortcPeerHandle(ice_servers)


__all__ = [
    "AiortcMediaCapability",
    "AiortcPeerHandle",
    "Candidate",
    "Description",
    "EVENT_ICE_CANDIDATE",
    "EVENT_TRACK",
    "LocalMedia",
    "MediaCapability",
    "PeerHandle",
    "build_configuration",
    "candidate_from_dict",
    "candidate_to_dict",
]
