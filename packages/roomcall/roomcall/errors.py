"""Call and signaling error taxonomy.

Safe to import anywhere; no aiortc or network imports.
"""

from __future__ import annotations


class CallError(Exception):
    """Base for every error the call core surfaces."""

    default_detail: str = "Call error"
    retryable: bool = False

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class PermissionDenied(CallError):
    default_detail = (
        "Microphone/camera access denied. Allow access in your system "
        "settings and try again."
    )


class DeviceNotFound(CallError):
    default_detail = "No microphone or camera found on this device."


class SignalingUnavailable(CallError):
    default_detail = "Failed to establish signaling connection."
    retryable = True


class NegotiationError(CallError):
    default_detail = "Session negotiation failed."


class TransientNetworkFailure(CallError):
    default_detail = "Media connection failed after restart attempt."
    retryable = True


class MalformedEnvelope(CallError):
    default_detail = "Malformed signaling envelope."
