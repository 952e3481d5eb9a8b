"""Signaling envelopes exchanged with the receiver.

Every message is a JSON object with a ``type`` discriminator:

    {"type": "auth", "pin": "123456"}
    {"type": "offer", "sdp": "v=0..."}
    {"type": "candidate", "candidate": {"candidate": "candidate:...", "sdpMid": "0", "sdpMLineIndex": 0}}
"""

import json
from dataclasses import dataclass, field
from typing import Any, Union

from castlink.errors import MessageError

__all__ = [
    "Answer",
    "Auth",
    "AuthFailed",
    "AuthSuccess",
    "Candidate",
    "Envelope",
    "ErrorReport",
    "MessageError",
    "Offer",
    "Ping",
    "decode_message",
    "encode_message",
]


@dataclass(frozen=True)
class Ping:
    type = "ping"

    def to_dict(self) -> dict:
        return {"type": self.type}


@dataclass(frozen=True)
class Auth:
    type = "auth"

    pin: str = field(repr=False)

    def to_dict(self) -> dict:
        return {"type": self.type, "pin": self.pin}


@dataclass(frozen=True)
class AuthSuccess:
    type = "auth_success"

    def to_dict(self) -> dict:
        return {"type": self.type}


@dataclass(frozen=True)
class AuthFailed:
    type = "auth_failed"

    message: str | None = None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {"type": self.type}
        if self.message is not None:
            d["message"] = self.message
        return d


@dataclass(frozen=True)
class ErrorReport:
    type = "error"

    message: str | None = None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {"type": self.type}
        if self.message is not None:
            d["message"] = self.message
        return d


@dataclass(frozen=True)
class Offer:
    type = "offer"

    sdp: str

    def to_dict(self) -> dict:
        return {"type": self.type, "sdp": self.sdp}


@dataclass(frozen=True)
class Answer:
    type = "answer"

    sdp: str

    def to_dict(self) -> dict:
        return {"type": self.type, "sdp": self.sdp}


@dataclass(frozen=True)
class Candidate:
    """ICE candidate in RTCIceCandidateInit shape."""

    type = "candidate"

    candidate: dict[str, Any]

    def to_dict(self) -> dict:
        return {"type": self.type, "candidate": self.candidate}


Envelope = Union[Ping, Auth, AuthSuccess, AuthFailed, ErrorReport, Offer, Answer, Candidate]


def _optional_text(d: dict, key: str) -> str | None:
    value = d.get(key)
    if value is None:
        return None
    return str(value)


def _required_text(d: dict, key: str, msg_type: str) -> str:
    value = d.get(key)
    if not isinstance(value, str):
        raise MessageError(f"'{msg_type}' message missing '{key}'")
    return value


def _parse_candidate(d: dict) -> Candidate:
    value = d.get("candidate")
    # Some receivers send the bare candidate line with sdpMid alongside it
    if isinstance(value, str):
        value = {
            "candidate": value,
            "sdpMid": d.get("sdpMid"),
            "sdpMLineIndex": d.get("sdpMLineIndex"),
        }
    if not isinstance(value, dict):
        raise MessageError("'candidate' message missing 'candidate'")
    return Candidate(candidate=value)


_PARSERS = {
    "ping": lambda d: Ping(),
    "auth": lambda d: Auth(pin=_required_text(d, "pin", "auth")),
    "auth_success": lambda d: AuthSuccess(),
    "auth_failed": lambda d: AuthFailed(message=_optional_text(d, "message")),
    "error": lambda d: ErrorReport(message=_optional_text(d, "message")),
    "offer": lambda d: Offer(sdp=_required_text(d, "sdp", "offer")),
    "answer": lambda d: Answer(sdp=_required_text(d, "sdp", "answer")),
    "candidate": _parse_candidate,
}


def encode_message(msg: Envelope) -> str:
    """Serialize an envelope to JSON text."""
    return json.dumps(msg.to_dict())


def decode_message(text: str | bytes) -> Envelope:
    """Parse JSON text into an envelope.

    Raises:
        MessageError: Invalid JSON, missing or unknown type, missing fields.
    """
    try:
        d = json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MessageError(f"Invalid JSON: {e}") from e

    if not isinstance(d, dict):
        raise MessageError("Message must be a JSON object")

    msg_type = d.get("type")
    parser = _PARSERS.get(msg_type) if isinstance(msg_type, str) else None
    if parser is None:
        raise MessageError(f"Unknown message type: {msg_type!r}")
    return parser(d)
