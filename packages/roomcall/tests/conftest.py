"""Shared fakes for session and controller tests."""

import asyncio
import itertools

import pytest

_ports = itertools.count(40000)


class FakeDescription:
    def __init__(self, sdp: str, type: str):
        self.sdp = sdp
        self.type = type


class FakePeerConnection:
    """Stands in for RTCPeerConnection. Records every call in order."""

    def __init__(self, configuration=None):
        self.configuration = configuration
        self.handlers: dict = {}
        self.tracks: list = []
        self.calls: list[str] = []
        self.candidates: list = []
        self.localDescription = None
        self.remoteDescription = None
        self.connectionState = "new"
        self.close_count = 0

    def on(self, event, handler=None):
        def register(fn):
            self.handlers[event] = fn
            return fn
        return register(handler) if handler else register

    async def emit(self, event, *args):
        result = self.handlers[event](*args)
        if asyncio.iscoroutine(result):
            await result

    async def set_connection_state(self, state: str):
        # Like aiortc, only a change of state is reported.
        if state == self.connectionState:
            return
        self.connectionState = state
        await self.emit("connectionstatechange")

    def addTrack(self, track):
        self.tracks.append(track)

    def _sdp(self) -> str:
        lines = ["v=0", "o=- 1 1 IN IP4 0.0.0.0", "s=-", "t=0 0"]
        kinds = [t.kind for t in self.tracks] or ["audio"]
        for index, kind in enumerate(kinds):
            lines += [
                f"m={kind} 9 UDP/TLS/RTP/SAVPF 96",
                f"a=mid:{index}",
                f"a=candidate:1 1 udp 2130706431 10.0.0.1 {next(_ports)} typ host",
            ]
        return "\r\n".join(lines) + "\r\n"

    async def createOffer(self):
        self.calls.append("createOffer")
        return FakeDescription(self._sdp(), "offer")

    async def createAnswer(self):
        self.calls.append("createAnswer")
        if self.remoteDescription is None:
            raise RuntimeError("createAnswer called before setRemoteDescription")
        return FakeDescription(self._sdp(), "answer")

    async def setLocalDescription(self, description):
        self.calls.append(f"setLocalDescription:{description.type}")
        self.localDescription = description

    async def setRemoteDescription(self, description):
        self.calls.append(f"setRemoteDescription:{description.type}")
        if "v=0" not in description.sdp:
            raise ValueError("Invalid SDP")
        self.remoteDescription = description

    async def addIceCandidate(self, candidate):
        if self.remoteDescription is None:
            raise RuntimeError("addIceCandidate called before setRemoteDescription")
        self.candidates.append(candidate)

    async def close(self):
        self.close_count += 1
        self.connectionState = "closed"


class PeerConnectionFactory:
    def __init__(self):
        self.created: list[FakePeerConnection] = []

    def __call__(self, configuration):
        pc = FakePeerConnection(configuration)
        self.created.append(pc)
        return pc


@pytest.fixture
def pc_factory():
    return PeerConnectionFactory()


def offer_sdp(port: int = 50000) -> str:
    return (
        "v=0\r\no=- 2 2 IN IP4 0.0.0.0\r\ns=-\r\nt=0 0\r\n"
        "m=audio 9 UDP/TLS/RTP/SAVPF 96\r\na=mid:0\r\n"
        f"a=candidate:1 1 udp 2130706431 10.0.0.2 {port} typ host\r\n"
    )


@pytest.fixture
def remote_sdp():
    return offer_sdp
