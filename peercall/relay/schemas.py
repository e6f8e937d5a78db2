"""
Pydantic schemas mirroring the relay wire contract.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class SignalKind(str, Enum):
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"


class MalformedSignal(ValueError):
    """Raised when an inbound frame cannot be turned into a signal."""


class SignalMessage(BaseModel):
    """Frame sent by a peer to the relay."""

    type: SignalKind
    data: Any = None

    model_config = ConfigDict(extra="ignore")


class Envelope(BaseModel):
    """
    Frame forwarded by the relay.

    ``from`` is a Python keyword, hence the alias.  The sender never controls
    it: the relay stamps the identity of the connection the frame arrived on.
    """

    type: SignalKind
    data: Any = None
    sender: str = Field(alias="from")

    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> str:
        return json.dumps(self.model_dump(mode="json", by_alias=True))


def _load_object(raw: Union[str, bytes]) -> dict:
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedSignal(f"frame is not valid UTF-8: {exc}") from exc
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise MalformedSignal(f"frame is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise MalformedSignal(f"expected a JSON object, got {type(payload).__name__}")
    return payload


def parse_signal(raw: Union[str, bytes]) -> SignalMessage:
    """
    Decode a raw frame into a :class:`SignalMessage`.

    Raises :class:`MalformedSignal` for undecodable bytes, invalid JSON,
    non-object payloads and unknown signal types.
    """

    try:
        return SignalMessage.model_validate(_load_object(raw))
    except ValidationError as exc:
        raise MalformedSignal(str(exc)) from exc


def parse_envelope(raw: Union[str, bytes]) -> Envelope:
    """Peer-side counterpart of :func:`parse_signal` for relayed frames."""

    try:
        return Envelope.model_validate(_load_object(raw))
    except ValidationError as exc:
        raise MalformedSignal(str(exc)) from exc
