"""
Relay process entrypoint.

Resolves configuration, initialises logging and serves the websocket relay
with uvicorn.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from typing import Optional

from .config import RelaySettings, load_profile
from .relay.server import RelayHub, create_app
from .utils.logging import configure_logging, parse_level

LOG = logging.getLogger(__name__)


async def serve(settings: RelaySettings, *, log_level: str = "info") -> None:
    """
    Run the relay inside an asyncio loop until SIGINT/SIGTERM.
    """

    import uvicorn

    hub = RelayHub(queue_size=settings.queue_size)
    app = create_app(hub=hub, settings=settings)
    server_config = uvicorn.Config(
        app=app,
        host=settings.host,
        port=settings.port,
        log_config=None,
        log_level=log_level,
        reload=False,
    )
    server = uvicorn.Server(config=server_config)

    def _handle_signal(signum: int, frame: Optional[object]) -> None:
        LOG.info("Received signal %s, shutting down relay...", signum)
        server.should_exit = True

    for signame in ("SIGINT", "SIGTERM"):
        signal.signal(getattr(signal, signame), _handle_signal)

    LOG.info("Signaling server is running on %s:%d", settings.host, settings.port)
    await server.serve()


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="peercall signaling relay")
    parser.add_argument("--profile", default="default", help="configuration profile to load")
    parser.add_argument("--host", default=None, help="bind host (overrides profile and env)")
    parser.add_argument("--port", type=int, default=None, help="bind port (overrides profile and PORT)")
    parser.add_argument("--log-level", default="info", help="logging level")
    return parser.parse_args(argv)


def resolve_settings(args: argparse.Namespace) -> RelaySettings:
    settings, _peer = load_profile(args.profile)
    if args.host:
        settings.host = args.host
    if args.port is not None:
        settings.port = args.port
    return settings


def run(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    configure_logging(parse_level(args.log_level))
    settings = resolve_settings(args)

    try:
        asyncio.run(serve(settings, log_level=args.log_level.lower()))
    except KeyboardInterrupt:
        LOG.info("Relay interrupted by user.")


if __name__ == "__main__":
    run()
