"""
Headless peer entrypoint.

Connects to the relay, wires a :class:`NegotiationCoordinator` to it and
either places a call (``--caller``) or waits for an offer and answers it.
Remote media is written to ``--record`` or discarded.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
from typing import Any, Optional

from aiortc.contrib.media import MediaBlackhole, MediaRecorder

from .config import PeerSettings, load_profile
from .rtc.coordinator import NegotiationCoordinator
from .rtc.media import AiortcMediaCapability
from .signaling.client import SignalingClient
from .utils.logging import configure_logging, parse_level

LOG = logging.getLogger(__name__)

CONNECT_TIMEOUT = 10.0


class RemoteSink:
    """Feed remote tracks into a recorder (or a blackhole)."""

    def __init__(self, record_path: Optional[str] = None) -> None:
        self.recorder = MediaRecorder(record_path) if record_path else MediaBlackhole()
        self._tasks: set[asyncio.Task] = set()

    def __call__(self, track: Any) -> None:
        LOG.info("Remote %s track received", getattr(track, "kind", "media"))
        self.recorder.addTrack(track)
        task = asyncio.ensure_future(self.recorder.start())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def stop(self) -> None:
        for task in list(self._tasks):
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self.recorder.stop()


async def report_stats(coordinator: NegotiationCoordinator, interval: float) -> None:
    """Log connection figures every ``interval`` seconds while a call is up."""

    while True:
        await asyncio.sleep(interval)
        try:
            figures = await coordinator.stats()
        except Exception:
            LOG.exception("Error getting stats")
            continue
        if not figures:
            continue
        LOG.info(
            "ping %.2f ms (avg %.2f ms), loss %.2f%%, received %.2f KB, sent %.2f KB",
            figures["ping"],
            figures["avgPing"],
            figures["packetLoss"],
            figures["bytesReceived"] / 1024,
            figures["bytesSent"] / 1024,
        )


async def run_peer(
    settings: PeerSettings,
    *,
    as_caller: bool,
    record_path: Optional[str] = None,
    stats_interval: float = 0.0,
) -> None:
    client = SignalingClient(
        settings.relay_url,
        max_reconnect_attempts=settings.max_reconnect_attempts,
        reconnect_delay=settings.reconnect_delay,
    )
    sink = RemoteSink(record_path)
    coordinator = NegotiationCoordinator(
        client,
        AiortcMediaCapability(device=settings.video_device, format=settings.video_format),
        ice_servers=settings.ice_servers,
        on_remote_track=sink,
    )
    coordinator.attach(client.registry)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signame in ("SIGINT", "SIGTERM"):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(getattr(signal, signame), stop_event.set)

    client_task = asyncio.create_task(client.run())
    client_task.add_done_callback(lambda _task: stop_event.set())
    stats_task: Optional[asyncio.Task] = None
    if stats_interval > 0:
        stats_task = asyncio.create_task(report_stats(coordinator, stats_interval))

    try:
        if not await client.wait_connected(timeout=CONNECT_TIMEOUT):
            LOG.error("Could not connect to %s within %.0fs", settings.relay_url, CONNECT_TIMEOUT)
            return
        if as_caller:
            await coordinator.start_call(True)
        else:
            LOG.info("Waiting for an offer...")
        await stop_event.wait()
    finally:
        if stats_task is not None:
            stats_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await stats_task
        coordinator.detach()
        await coordinator.end_call()
        await sink.stop()
        await client.close()
        client_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await client_task


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="peercall headless peer")
    parser.add_argument("--profile", default="default", help="configuration profile to load")
    parser.add_argument("--relay-url", default=None, help="relay websocket URL")
    parser.add_argument("--caller", action="store_true", help="place the call instead of waiting for an offer")
    parser.add_argument("--device", default=None, help="capture device for MediaPlayer (synthetic media if omitted)")
    parser.add_argument("--format", default=None, help="capture format for MediaPlayer, e.g. v4l2 or avfoundation")
    parser.add_argument("--record", default=None, help="write remote media to this file")
    parser.add_argument("--stats-interval", type=float, default=0.0, help="log connection statistics every N seconds (0 disables)")
    parser.add_argument("--log-level", default="info", help="logging level")
    return parser.parse_args(argv)


def resolve_settings(args: argparse.Namespace) -> PeerSettings:
    _relay, settings = load_profile(args.profile)
    if args.relay_url:
        settings.relay_url = args.relay_url
    if args.device:
        settings.video_device = args.device
    if args.format:
        settings.video_format = args.format
    return settings


def run(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    configure_logging(parse_level(args.log_level))
    settings = resolve_settings(args)

    try:
        asyncio.run(
            run_peer(
                settings,
                as_caller=args.caller,
                record_path=args.record,
                stats_interval=args.stats_interval,
            )
        )
    except KeyboardInterrupt:
        LOG.info("Peer interrupted by user.")


if __name__ == "__main__":
    run()
