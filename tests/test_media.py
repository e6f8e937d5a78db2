"""Tests covering the aiortc-backed media capability."""

import asyncio

import pytest

from peercall.rtc.media import (
    AiortcMediaCapability,
    AiortcPeerHandle,
    build_configuration,
    candidate_from_dict,
    candidate_to_dict,
    description_from_dict,
)

CANDIDATE = {
    "candidate": "candidate:842163049 1 udp 1677729535 192.0.2.1 3478 typ srflx raddr 10.0.0.1 rport 50000",
    "sdpMid": "0",
    "sdpMLineIndex": 0,
}


def test_build_configuration_lists_stun_servers() -> None:
    config = build_configuration(["stun:stun.l.google.com:19302", "stun:stun1.l.google.com:19302"])

    assert [server.urls for server in config.iceServers] == [
        "stun:stun.l.google.com:19302",
        "stun:stun1.l.google.com:19302",
    ]


def test_candidate_dict_conversion() -> None:
    candidate = candidate_from_dict(CANDIDATE)

    assert candidate.ip == "192.0.2.1"
    assert candidate.port == 3478
    assert candidate.type == "srflx"
    assert candidate.sdpMid == "0"
    assert candidate.sdpMLineIndex == 0

    payload = candidate_to_dict(candidate)
    assert payload["candidate"].startswith("candidate:842163049 1 udp")
    assert payload["sdpMid"] == "0"


def test_invalid_payloads_are_rejected() -> None:
    with pytest.raises(ValueError):
        candidate_from_dict({"sdpMid": "0"})
    with pytest.raises(ValueError):
        description_from_dict({"sdp": "v=0"})


def test_synthetic_media_tracks_stop() -> None:
    async def scenario():
        media = await AiortcMediaCapability().acquire_local_media()
        media.stop()
        return media

    media = asyncio.run(scenario())

    assert sorted(track.kind for track in media.tracks) == ["audio", "video"]
    assert all(track.readyState == "ended" for track in media.tracks)
    assert media.stopped is True


def test_handle_holds_candidates_until_remote_description() -> None:
    async def scenario():
        handle = AiortcPeerHandle([])
        await handle.add_candidate(CANDIDATE)
        early = list(handle._early_candidates)  # type: ignore[attr-defined]
        await handle.close()
        return early

    assert asyncio.run(scenario()) == [CANDIDATE]


def test_handle_stats_are_plain_dicts() -> None:
    async def scenario():
        handle = AiortcPeerHandle([])
        reports = await handle.get_stats()
        await handle.close()
        return reports

    reports = asyncio.run(scenario())

    assert isinstance(reports, list)
    assert all(isinstance(report, dict) and "type" in report for report in reports)
