"""Signaling envelopes and their JSON wire form.

Wire messages are flat JSON objects::

    {"type": "offer", "roomId": "r1", "userId": "alice", "to": "bob",
     "sdp": "v=0...", "isVideo": false}

The relay only needs the routing header (type, room, sender, recipient) and
forwards everything else untouched. Clients decode the full message into one
dataclass per envelope kind.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum

from roomcall.errors import MalformedEnvelope


class SignalType(str, Enum):
    JOIN = "join"
    JOINED = "joined"
    OFFER = "offer"
    ANSWER = "answer"
    CANDIDATE = "candidate"
    END = "end"
    PEER_LEFT = "peer_left"
    PING = "ping"
    PONG = "pong"


# Kinds a client may ask the relay to forward to other members.
ROUTABLE = frozenset({
    SignalType.OFFER,
    SignalType.ANSWER,
    SignalType.CANDIDATE,
    SignalType.END,
})


@dataclass(frozen=True)
class Header:
    """Routing fields of a wire message. Payload is never inspected."""
    type: SignalType
    room_id: str | None
    from_user: str | None
    to_user: str | None


@dataclass
class Envelope:
    room_id: str
    from_user: str = ""
    to_user: str | None = None

    type = None  # set per subclass

    def payload(self) -> dict:
        return {}

    def to_wire(self) -> dict:
        msg = {"type": self.type.value, "roomId": self.room_id, "userId": self.from_user}
        if self.to_user:
            msg["to"] = self.to_user
        msg.update(self.payload())
        return msg


@dataclass
class Join(Envelope):
    type = SignalType.JOIN


@dataclass
class Joined(Envelope):
    type = SignalType.JOINED


@dataclass
class Offer(Envelope):
    sdp: str = ""
    is_video: bool = False

    type = SignalType.OFFER

    def payload(self) -> dict:
        return {"sdp": self.sdp, "isVideo": self.is_video}

    def description(self) -> dict:
        return {"type": "offer", "sdp": self.sdp}


@dataclass
class Answer(Envelope):
    sdp: str = ""

    type = SignalType.ANSWER

    def payload(self) -> dict:
        return {"sdp": self.sdp}

    def description(self) -> dict:
        return {"type": "answer", "sdp": self.sdp}


@dataclass
class Candidate(Envelope):
    candidate: str = ""
    sdp_mid: str | None = None
    sdp_mline_index: int | None = None

    type = SignalType.CANDIDATE

    def payload(self) -> dict:
        return {
            "candidate": self.candidate,
            "sdpMid": self.sdp_mid,
            "sdpMLineIndex": self.sdp_mline_index,
        }


@dataclass
class End(Envelope):
    type = SignalType.END


@dataclass
class PeerLeft(Envelope):
    """`from_user` is the member who left."""
    type = SignalType.PEER_LEFT


@dataclass
class Ping(Envelope):
    type = SignalType.PING


@dataclass
class Pong(Envelope):
    type = SignalType.PONG


_VARIANTS: dict[SignalType, type[Envelope]] = {
    SignalType.JOIN: Join,
    SignalType.JOINED: Joined,
    SignalType.OFFER: Offer,
    SignalType.ANSWER: Answer,
    SignalType.CANDIDATE: Candidate,
    SignalType.END: End,
    SignalType.PEER_LEFT: PeerLeft,
    SignalType.PING: Ping,
    SignalType.PONG: Pong,
}


def decode(raw: str | bytes | dict) -> dict:
    """Decode raw wire text into a message dict."""
    if isinstance(raw, dict):
        return raw
    try:
        msg = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MalformedEnvelope(f"Invalid JSON: {e}") from e
    if not isinstance(msg, dict):
        raise MalformedEnvelope("Envelope must be a JSON object")
    return msg


def encode(envelope: Envelope | dict) -> str:
    msg = envelope.to_wire() if isinstance(envelope, Envelope) else envelope
    return json.dumps(msg)


def _optional_str(msg: dict, key: str) -> str | None:
    value = msg.get(key)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise MalformedEnvelope(f"Field {key!r} must be a string")
    return value


def read_header(msg: dict) -> Header:
    """Extract routing fields, rejecting unknown types."""
    try:
        kind = SignalType(msg.get("type", ""))
    except ValueError:
        raise MalformedEnvelope(f"Unknown message type: {msg.get('type')!r}") from None
    return Header(
        type=kind,
        room_id=_optional_str(msg, "roomId"),
        from_user=_optional_str(msg, "from") or _optional_str(msg, "userId"),
        to_user=_optional_str(msg, "to"),
    )


def parse_envelope(raw: str | bytes | dict) -> Envelope:
    """Decode a wire message into its typed variant."""
    msg = decode(raw)
    header = read_header(msg)
    cls = _VARIANTS[header.type]
    common = {
        "room_id": header.room_id or "",
        "from_user": header.from_user or "",
        "to_user": header.to_user,
    }

    if cls is Offer:
        sdp = msg.get("sdp")
        if not isinstance(sdp, str) or not sdp:
            raise MalformedEnvelope("Missing SDP in offer")
        return Offer(sdp=sdp, is_video=bool(msg.get("isVideo", False)), **common)

    if cls is Answer:
        sdp = msg.get("sdp")
        if not isinstance(sdp, str) or not sdp:
            raise MalformedEnvelope("Missing SDP in answer")
        return Answer(sdp=sdp, **common)

    if cls is Candidate:
        candidate = msg.get("candidate")
        if not isinstance(candidate, str) or not candidate:
            raise MalformedEnvelope("Missing candidate")
        mline = msg.get("sdpMLineIndex")
        if mline is not None and not isinstance(mline, int):
            raise MalformedEnvelope("sdpMLineIndex must be an integer")
        return Candidate(
            candidate=candidate,
            sdp_mid=_optional_str(msg, "sdpMid"),
            sdp_mline_index=mline,
            **common,
        )

    return cls(**common)
