"""Tests covering signal frame parsing."""

import pytest

from peercall.relay.schemas import MalformedSignal, SignalKind, parse_envelope, parse_signal


def test_parse_signal_accepts_text_and_bytes() -> None:
    text = parse_signal('{"type": "ice-candidate", "data": {"candidate": "c"}}')
    raw = parse_signal(b'{"type": "offer", "data": {"type": "offer", "sdp": "v=0"}}')

    assert text.type is SignalKind.ICE_CANDIDATE
    assert text.data == {"candidate": "c"}
    assert raw.type is SignalKind.OFFER
    assert raw.data["sdp"] == "v=0"


def test_parse_signal_defaults_missing_data_to_none() -> None:
    assert parse_signal('{"type": "answer"}').data is None


@pytest.mark.parametrize(
    "raw",
    [
        "",
        "{oops",
        '"offer"',
        "[]",
        '{"data": 1}',
        '{"type": "hangup", "data": 1}',
        b"\x80\x81",
    ],
)
def test_parse_signal_rejects_malformed_frames(raw) -> None:
    with pytest.raises(MalformedSignal):
        parse_signal(raw)


def test_parse_envelope_requires_sender() -> None:
    envelope = parse_envelope('{"type": "offer", "data": "O1", "from": "1"}')

    assert envelope.sender == "1"
    with pytest.raises(MalformedSignal):
        parse_envelope('{"type": "offer", "data": "O1"}')
