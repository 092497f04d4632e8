"""Call signaling and session negotiation for chat rooms."""

from roomcall.errors import (
    CallError,
    PermissionDenied,
    DeviceNotFound,
    SignalingUnavailable,
    NegotiationError,
    TransientNetworkFailure,
    MalformedEnvelope,
)
from roomcall.config import CallConfig
from roomcall.registry import RoomRegistry
from roomcall.relay import SignalRelay
from roomcall.mailbox import MailboxHub
from roomcall.channels import SignalingChannel, WebSocketChannel, MailboxChannel
from roomcall.selector import SignalingSelector
from roomcall.machine import CallState, CallEvent
from roomcall.media import MediaKind, MediaStream, PlayerMediaDevices, SyntheticMediaDevices
from roomcall.session import CallSession
from roomcall.ring import CallMetadata, CallStatus, RingChannel, RemoteRingChannel
from roomcall.call import CallController, IncomingCall
from roomcall.ice import StaticIceServers, TwilioIceServers

__all__ = [
    "CallError",
    "PermissionDenied",
    "DeviceNotFound",
    "SignalingUnavailable",
    "NegotiationError",
    "TransientNetworkFailure",
    "MalformedEnvelope",
    "CallConfig",
    "RoomRegistry",
    "SignalRelay",
    "MailboxHub",
    "SignalingChannel",
    "WebSocketChannel",
    "MailboxChannel",
    "SignalingSelector",
    "CallState",
    "CallEvent",
    "MediaKind",
    "MediaStream",
    "PlayerMediaDevices",
    "SyntheticMediaDevices",
    "CallSession",
    "CallMetadata",
    "CallStatus",
    "RingChannel",
    "RemoteRingChannel",
    "CallController",
    "IncomingCall",
    "StaticIceServers",
    "TwilioIceServers",
]
