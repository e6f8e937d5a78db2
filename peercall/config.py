"""
Configuration for the relay and peer processes.

Settings come from three layers, each overriding the previous one: dataclass
defaults, a named profile from ``configs/profiles.yaml`` and a handful of
environment variables.  CLI flags are applied on top by the entrypoints.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

CONFIG_DIR = Path(__file__).resolve().parent / "configs"
PROFILES_PATH = CONFIG_DIR / "profiles.yaml"

ENV_PORT_VAR = "PORT"
ENV_HOST_VAR = "PEERCALL_HOST"
ENV_RELAY_URL_VAR = "PEERCALL_RELAY_URL"

DEFAULT_PORT = 8001
DEFAULT_STUN_SERVERS = (
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
)


class ConfigError(ValueError):
    """Raised when a profile is missing or malformed."""


@dataclass
class RelaySettings:
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    queue_size: int = 256


@dataclass
class PeerSettings:
    """
    Parameters for a peer process.

    ``ice_servers`` is handed to the media capability untouched; the relay URL
    points at the websocket endpoint served by :mod:`peercall.relay.server`.
    """

    relay_url: str = f"ws://localhost:{DEFAULT_PORT}"
    ice_servers: List[str] = field(default_factory=lambda: list(DEFAULT_STUN_SERVERS))
    max_reconnect_attempts: int = 5
    reconnect_delay: float = 1.0
    video_device: Optional[str] = None
    video_format: Optional[str] = None


def _read_profiles(path: Path) -> Dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as handle:
            profiles = yaml.safe_load(handle) or {}
    except FileNotFoundError:
        return {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid profiles file {path}: {exc}") from exc
    if not isinstance(profiles, dict):
        raise ConfigError(f"profiles file {path} must contain a mapping")
    return profiles


def _apply(settings, values: Mapping[str, Any], section: str):
    known = {item.name for item in fields(settings)}
    unknown = set(values) - known
    if unknown:
        raise ConfigError(f"unknown {section} settings: {', '.join(sorted(unknown))}")
    return replace(settings, **dict(values))


def _apply_env(
    relay: RelaySettings, peer: PeerSettings, environ: Mapping[str, str]
) -> Tuple[RelaySettings, PeerSettings]:
    port = environ.get(ENV_PORT_VAR)
    if port:
        try:
            relay = replace(relay, port=int(port))
        except ValueError:
            raise ConfigError(f"{ENV_PORT_VAR} must be an integer, got {port!r}") from None
    host = environ.get(ENV_HOST_VAR)
    if host:
        relay = replace(relay, host=host)
    relay_url = environ.get(ENV_RELAY_URL_VAR)
    if relay_url:
        peer = replace(peer, relay_url=relay_url)
    return relay, peer


def load_profile(
    name: str = "default",
    path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Tuple[RelaySettings, PeerSettings]:
    """
    Resolve relay and peer settings for profile ``name``.

    A missing profiles file yields the built-in defaults; a missing profile in
    an existing file is an error.
    """

    profiles = _read_profiles(path or PROFILES_PATH)
    relay = RelaySettings()
    peer = PeerSettings()

    if profiles:
        if name not in profiles:
            raise ConfigError(f"unknown profile: {name!r}")
        profile = profiles.get(name) or {}
        if not isinstance(profile, dict):
            raise ConfigError(f"profile {name!r} must be a mapping")
        relay = _apply(relay, profile.get("relay") or {}, "relay")
        peer = _apply(peer, profile.get("peer") or {}, "peer")

    return _apply_env(relay, peer, os.environ if environ is None else environ)


__all__ = [
    "ConfigError",
    "DEFAULT_STUN_SERVERS",
    "PeerSettings",
    "RelaySettings",
    "load_profile",
]
