"""
Peer-side negotiation state machine.

A :class:`NegotiationCoordinator` owns one :class:`NegotiationSession` at a
time and drives the offer/answer exchange over an injected signaling client.
Everything runs on one event loop; handlers registered on the peer handle
always read ``self.session`` afresh instead of holding on to a session across
suspension points.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..config import DEFAULT_STUN_SERVERS
from ..relay.schemas import SignalKind
from ..signaling.registry import SignalRegistry
from .media import (
    EVENT_ICE_CANDIDATE,
    EVENT_TRACK,
    Candidate,
    Description,
    LocalMedia,
    MediaCapability,
    PeerHandle,
)

LOG = logging.getLogger(__name__)

PING_HISTORY = 10


class NegotiationError(RuntimeError):
    """Base class for negotiation failures."""


class NegotiationStateError(NegotiationError):
    """Raised when an operation is invoked in a state that does not allow it."""


class MediaAcquisitionError(NegotiationError):
    """Raised when local audio/video cannot be acquired."""


class _CallCancelled(Exception):
    pass


class CallRole(str, Enum):
    UNDECIDED = "undecided"
    CALLER = "caller"
    RECEIVER = "receiver"


class CallState(str, Enum):
    IDLE = "idle"
    NEGOTIATING = "negotiating"
    ACTIVE = "active"


@dataclass
class NegotiationSession:
    """
    Mutable per-call state.

    ``pending_candidates`` only holds entries while ``handle`` is ``None`` or
    while a drain into a freshly attached handle is in progress.
    """

    role: CallRole = CallRole.UNDECIDED
    handle: Optional[PeerHandle] = None
    pending_candidates: List[Candidate] = field(default_factory=list)
    call_active: bool = False
    call_ended: bool = False
    local_media: Optional[LocalMedia] = None
    remote_tracks: List[Any] = field(default_factory=list)
    setup_in_progress: bool = False
    setup_done: Optional[asyncio.Event] = None
    draining: bool = False
    ping_history: List[float] = field(default_factory=list)

    def is_pristine(self) -> bool:
        return (
            self.role is CallRole.UNDECIDED
            and self.handle is None
            and self.local_media is None
            and not self.pending_candidates
            and not self.call_active
            and not self.setup_in_progress
        )


class NegotiationCoordinator:
    """
    Drive offer/answer negotiation for the local peer.

    ``signaling`` is anything exposing ``async send_signal(kind, data)``;
    normally the process-wide :class:`peercall.signaling.SignalingClient`.
    """

    def __init__(
        self,
        signaling,
        media: MediaCapability,
        *,
        ice_servers: Sequence[str] = DEFAULT_STUN_SERVERS,
        on_remote_track: Optional[Callable[[Any], None]] = None,
    ) -> None:
        self.signaling = signaling
        self.media = media
        self.ice_servers = list(ice_servers)
        self.on_remote_track = on_remote_track
        self.session = NegotiationSession()
        self._generation = 0
        self._registry: Optional[SignalRegistry] = None
        self._tokens: List[int] = []

    # ------------------------------------------------------------------ state

    @property
    def state(self) -> CallState:
        session = self.session
        if session.handle is not None:
            return CallState.ACTIVE
        if session.setup_in_progress or session.role is not CallRole.UNDECIDED:
            return CallState.NEGOTIATING
        return CallState.IDLE

    @property
    def role(self) -> CallRole:
        return self.session.role

    @property
    def local_media(self) -> Optional[LocalMedia]:
        return self.session.local_media

    @property
    def remote_tracks(self) -> List[Any]:
        return list(self.session.remote_tracks)

    @property
    def call_active(self) -> bool:
        return self.session.call_active

    @property
    def pending_candidates(self) -> List[Candidate]:
        return list(self.session.pending_candidates)

    def snapshot(self) -> Dict[str, Any]:
        session = self.session
        return {
            "state": self.state.value,
            "role": session.role.value,
            "callActive": session.call_active,
            "callEnded": session.call_ended,
            "hasLocalMedia": session.local_media is not None,
            "remoteTracks": len(session.remote_tracks),
            "pendingCandidates": len(session.pending_candidates),
        }

    # ------------------------------------------------------------------ wiring

    def attach(self, registry: SignalRegistry) -> None:
        """Subscribe to relayed offers, answers and candidates."""

        self.detach()
        self._registry = registry
        self._tokens = [
            registry.subscribe(SignalKind.OFFER, self.handle_offer),
            registry.subscribe(SignalKind.ANSWER, self.handle_answer),
            registry.subscribe(SignalKind.ICE_CANDIDATE, self.handle_ice_candidate),
        ]

    def detach(self) -> None:
        if self._registry is not None:
            for token in self._tokens:
                self._registry.unsubscribe(token)
        self._registry = None
        self._tokens = []

    # ------------------------------------------------------------------ operations

    async def start_call(self, as_caller: bool) -> None:
        """
        Acquire local media and create the peer handle.

        As caller, also produce, commit and send the offer.  On failure every
        acquired resource is released, the coordinator returns to idle and the
        error propagates.
        """

        session = self.session
        if session.handle is not None or session.setup_in_progress:
            raise NegotiationStateError("a call is already in progress")

        session.role = CallRole.CALLER if as_caller else CallRole.RECEIVER
        session.call_ended = False
        session.setup_in_progress = True
        setup_done = session.setup_done = asyncio.Event()
        generation = self._generation
        media: Optional[LocalMedia] = None
        handle: Optional[PeerHandle] = None
        attached = False
        offer: Optional[Description] = None

        try:
            media = await self._acquire_media()
            self._ensure_current(generation)
            handle = self._create_handle(media, generation)
            if as_caller:
                offer = await handle.set_local_description(await handle.create_offer())
                self._ensure_current(generation)
            await self._attach(handle, media)
            attached = True
            self._ensure_current(generation)
        except Exception as exc:
            if isinstance(exc, _CallCancelled) or generation != self._generation:
                if not attached:
                    await self._release(media, handle)
                LOG.info("Call setup abandoned; the call was ended meanwhile")
                return
            await self._abort_setup(generation, media, handle)
            raise
        finally:
            setup_done.set()

        LOG.info("Call started as %s", self.session.role.value)
        if offer is not None:
            await self.signaling.send_signal(SignalKind.OFFER, offer)

    async def handle_offer(self, offer: Description) -> None:
        if self.session.role is CallRole.CALLER:
            LOG.info("Ignoring offer received while acting as caller")
            return
        await self.answer_call(offer)

    async def answer_call(self, offer: Description) -> None:
        """
        Answer ``offer``: reuse the handle from ``start_call(False)`` when one
        exists, otherwise acquire media and create it.  Sends exactly one
        answer.

        An offer that arrives while the handle is still being set up waits for
        that setup and then answers on the resulting handle.  If the setup
        fails or the call is ended meanwhile, the offer is dropped.
        """

        session = self.session
        if session.role is CallRole.CALLER:
            raise NegotiationStateError("cannot answer an offer while acting as caller")

        generation = self._generation
        if session.setup_in_progress and session.setup_done is not None:
            LOG.debug("Offer arrived during call setup; waiting for it to finish")
            await session.setup_done.wait()
            session = self.session
            if generation != self._generation or session.handle is None:
                LOG.info("Dropping offer; call setup did not complete")
                return

        session.role = CallRole.RECEIVER
        session.call_ended = False
        handle = session.handle
        created = handle is None
        media: Optional[LocalMedia] = None
        attached = False
        setup_done: Optional[asyncio.Event] = None
        if created:
            session.setup_in_progress = True
            setup_done = session.setup_done = asyncio.Event()

        try:
            if created:
                media = await self._acquire_media()
                self._ensure_current(generation)
                handle = self._create_handle(media, generation)
                await handle.set_remote_description(offer)
                self._ensure_current(generation)
                await self._attach(handle, media)
                attached = True
            else:
                await handle.set_remote_description(offer)
                self._ensure_current(generation)
            answer = await handle.set_local_description(await handle.create_answer())
            self._ensure_current(generation)
        except Exception as exc:
            if isinstance(exc, _CallCancelled) or generation != self._generation:
                if created and not attached:
                    await self._release(media, handle)
                LOG.info("Answer abandoned; the call was ended meanwhile")
                return
            if created:
                await self._abort_setup(generation, media, handle)
            raise
        finally:
            if setup_done is not None:
                setup_done.set()

        LOG.info("Answering offer")
        await self.signaling.send_signal(SignalKind.ANSWER, answer)

    async def make_offer(self) -> Description:
        """Produce and commit a fresh local offer on the current handle."""

        handle = self.session.handle
        if handle is None:
            raise NegotiationStateError("no peer connection")
        return await handle.set_local_description(await handle.create_offer())

    async def handle_answer(self, answer: Description) -> None:
        session = self.session
        if session.role is not CallRole.CALLER:
            raise NegotiationStateError("received an answer without having sent an offer")
        handle = session.handle
        if handle is None:
            raise NegotiationStateError("no peer connection")

        await handle.set_remote_description(answer)
        if self.session.handle is handle:
            await self._drain(handle)

    async def handle_ice_candidate(self, candidate: Candidate) -> None:
        session = self.session
        if session.handle is None or session.draining:
            session.pending_candidates.append(candidate)
            LOG.debug("Queued ICE candidate (%d pending)", len(session.pending_candidates))
            return
        await session.handle.add_candidate(candidate)

    async def end_call(self) -> None:
        """
        Stop local media, close the handle and reset the session.

        Safe at any point; a no-op when already idle.  An in-flight
        ``start_call``/``answer_call`` notices at its next suspension point and
        gives up.
        """

        session = self.session
        if session.is_pristine():
            return

        had_call = session.role is not CallRole.UNDECIDED or session.handle is not None
        self._generation += 1
        self.session = NegotiationSession(call_ended=had_call or session.call_ended)
        await self._release(session.local_media, session.handle)
        if had_call:
            LOG.info("Call ended")

    async def stats(self) -> Dict[str, Any]:
        """
        Summarise the live connection.

        Returns ``ping`` and ``avgPing`` (milliseconds, the average covering the
        last ten samples), ``packetLoss`` (percent of inbound packets),
        ``bytesReceived``, ``bytesSent`` and a millisecond ``timestamp``.
        Empty when there is no peer handle.
        """

        session = self.session
        handle = session.handle
        if handle is None:
            return {}

        generation = self._generation
        try:
            reports = await handle.get_stats()
        except Exception:
            if generation != self._generation:
                return {}
            raise
        if generation != self._generation:
            return {}

        ping, lost, received, bytes_received, bytes_sent = _summarise_reports(reports)
        if ping is not None:
            session.ping_history.append(ping)
            del session.ping_history[:-PING_HISTORY]
        history = session.ping_history
        total = lost + received
        return {
            "ping": ping if ping is not None else 0.0,
            "avgPing": sum(history) / len(history) if history else 0.0,
            "packetLoss": lost / total * 100 if total > 0 else 0.0,
            "bytesReceived": bytes_received,
            "bytesSent": bytes_sent,
            "timestamp": int(time.time() * 1000),
        }

    # ------------------------------------------------------------------ helpers

    def _ensure_current(self, generation: int) -> None:
        if generation != self._generation:
            raise _CallCancelled()

    async def _acquire_media(self) -> LocalMedia:
        try:
            return await self.media.acquire_local_media()
        except Exception as exc:
            raise MediaAcquisitionError(f"could not acquire local media: {exc}") from exc

    def _create_handle(self, media: LocalMedia, generation: int) -> PeerHandle:
        handle = self.media.create_handle(self.ice_servers)
        handle.add_local_media(media)

        async def _on_candidate(candidate: Candidate) -> None:
            if generation != self._generation:
                return
            await self.signaling.send_signal(SignalKind.ICE_CANDIDATE, candidate)

        def _on_track(track: Any) -> None:
            if generation != self._generation:
                return
            self.session.remote_tracks.append(track)
            if self.on_remote_track is not None:
                try:
                    self.on_remote_track(track)
                except Exception:
                    LOG.exception("Remote track consumer failed.")

        handle.on(EVENT_ICE_CANDIDATE, _on_candidate)
        handle.on(EVENT_TRACK, _on_track)
        return handle

    async def _attach(self, handle: PeerHandle, media: LocalMedia) -> None:
        session = self.session
        session.handle = handle
        session.local_media = media
        session.call_active = True
        session.setup_in_progress = False
        await self._drain(handle)

    async def _drain(self, handle: PeerHandle) -> None:
        session = self.session
        if session.draining:
            return
        session.draining = True
        try:
            while self.session is session and session.handle is handle and session.pending_candidates:
                candidate = session.pending_candidates.pop(0)
                try:
                    await handle.add_candidate(candidate)
                except Exception:
                    LOG.exception("Failed to apply queued ICE candidate.")
        finally:
            session.draining = False

    async def _abort_setup(
        self,
        generation: int,
        media: Optional[LocalMedia],
        handle: Optional[PeerHandle],
    ) -> None:
        if generation == self._generation:
            pending = self.session.pending_candidates
            self.session = NegotiationSession(pending_candidates=pending)
        await self._release(media, handle)

    async def _release(self, media: Optional[LocalMedia], handle: Optional[PeerHandle]) -> None:
        if media is not None:
            media.stop()
        if handle is not None:
            try:
                await handle.close()
            except Exception:
                LOG.exception("Failed to close peer connection.")


def _summarise_reports(reports: Sequence[Dict[str, Any]]) -> Tuple[Optional[float], int, int, int, int]:
    """Reduce raw reports to (rtt ms, packets lost, packets received, bytes in, bytes out)."""

    pair_rtt: Optional[float] = None
    rtp_rtt: Optional[float] = None
    lost = received = 0
    rtp_in = rtp_out = 0
    transport_in = transport_out = 0
    has_transport = False

    for report in reports:
        kind = report.get("type")
        if kind == "candidate-pair" and report.get("state") == "succeeded":
            if report.get("currentRoundTripTime"):
                pair_rtt = report["currentRoundTripTime"] * 1000
            has_transport = True
            transport_in += report.get("bytesReceived") or 0
            transport_out += report.get("bytesSent") or 0
        elif kind == "transport":
            has_transport = True
            transport_in += report.get("bytesReceived") or 0
            transport_out += report.get("bytesSent") or 0
        elif kind == "remote-inbound-rtp":
            if rtp_rtt is None and report.get("roundTripTime"):
                rtp_rtt = report["roundTripTime"] * 1000
        elif kind == "inbound-rtp":
            lost += max(0, report.get("packetsLost") or 0)
            received += report.get("packetsReceived") or 0
            rtp_in += report.get("bytesReceived") or 0
        elif kind == "outbound-rtp":
            rtp_out += report.get("bytesSent") or 0

    ping = pair_rtt if pair_rtt is not None else rtp_rtt
    if has_transport:
        return ping, lost, received, transport_in, transport_out
    return ping, lost, received, rtp_in, rtp_out


__all__ = [
    "CallRole",
    "CallState",
    "MediaAcquisitionError",
    "NegotiationCoordinator",
    "NegotiationError",
    "NegotiationSession",
    "NegotiationStateError",
]
