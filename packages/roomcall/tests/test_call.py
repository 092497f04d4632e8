"""Tests for roomcall.call: two controllers talking through an in-process relay."""

import asyncio

import pytest

from roomcall.call import CallController
from roomcall.channels import SignalingChannel
from roomcall.config import CallConfig
from roomcall.errors import NegotiationError
from roomcall.machine import CallState
from roomcall.media import MediaKind, SyntheticMediaDevices
from roomcall.relay import RelayPeer, SignalRelay
from roomcall.ring import CallStatus, RingChannel
from roomcall.selector import SignalingSelector


class LoopbackChannel(SignalingChannel):
    """Signaling channel wired straight into a SignalRelay."""

    name = "loopback"

    def __init__(self, relay: SignalRelay):
        super().__init__()
        self.relay = relay
        self.peer: RelayPeer | None = None

    @property
    def connected(self) -> bool:
        return self.peer is not None

    async def open(self):
        self.peer = RelayPeer(connection=self)

    async def join(self, room_id: str, user_id: str):
        await self.relay.dispatch(self.peer, {"type": "join", "roomId": room_id, "userId": user_id})

    async def send(self, message: dict):
        await self.relay.dispatch(self.peer, message)

    async def send_json(self, data: dict):
        await self._deliver(data)

    async def close(self):
        peer, self.peer = self.peer, None
        if peer is not None:
            await self.relay.disconnect(peer)


class Peer:
    def __init__(self, relay, user, pc_factory, ring=None, config=None):
        self.devices = SyntheticMediaDevices()
        self.incoming = []
        self.states = []
        self.controller = CallController(
            "r1", user, SignalingSelector(LoopbackChannel(relay)), self.devices,
            ring=ring, config=config, peer_connection_factory=pc_factory,
        )
        self.controller.on_incoming_call = self.incoming.append
        self.controller.on_status_change = self.states.append

    @property
    def pc(self):
        return self.controller.session.peer_connection


async def make_pair(pc_factory, ring=None, config=None):
    relay = SignalRelay()
    alice = Peer(relay, "alice", pc_factory, ring, config)
    bob = Peer(relay, "bob", pc_factory, ring, config)
    await alice.controller.open()
    await bob.controller.open()
    return relay, alice, bob


async def connect_call(alice, bob):
    await alice.controller.start()
    await bob.controller.answer()
    await alice.pc.set_connection_state("connected")
    await bob.pc.set_connection_state("connected")


class TestCallScenario:
    @pytest.mark.asyncio
    async def test_offer_answer_connect(self, pc_factory):
        _, alice, bob = await make_pair(pc_factory)

        await alice.controller.start()
        assert alice.controller.state is CallState.OFFER_SENT
        assert [c.caller_id for c in bob.incoming] == ["alice"]
        assert bob.controller.state is CallState.IDLE
        assert len(bob.controller.session.pending_remote_candidates) == 1

        await bob.controller.answer()
        assert bob.controller.state is CallState.ANSWERED
        assert alice.pc.remoteDescription.type == "answer"
        assert len(bob.pc.candidates) == 1
        assert len(alice.pc.candidates) == 1

        await alice.pc.set_connection_state("connected")
        await bob.pc.set_connection_state("connected")
        assert alice.controller.state is CallState.CONNECTED
        assert bob.controller.state is CallState.CONNECTED

    @pytest.mark.asyncio
    async def test_end_reaches_peer_and_releases_media(self, pc_factory):
        _, alice, bob = await make_pair(pc_factory)
        await connect_call(alice, bob)

        await alice.controller.end()

        assert alice.controller.state is CallState.ENDED
        assert bob.controller.state is CallState.ENDED
        assert alice.devices.live_tracks == []
        assert bob.devices.live_tracks == []
        assert bob.states[-1] == "ended"

    @pytest.mark.asyncio
    async def test_decline(self, pc_factory):
        _, alice, bob = await make_pair(pc_factory)
        await alice.controller.start()

        await bob.controller.decline()

        assert alice.controller.state is CallState.ENDED
        assert bob.controller.state is CallState.ENDED
        assert alice.devices.live_tracks == []
        assert bob.devices.issued == []

    @pytest.mark.asyncio
    async def test_peer_left_ends_call(self, pc_factory):
        _, alice, bob = await make_pair(pc_factory)
        await connect_call(alice, bob)

        await bob.controller.selector.close()

        assert alice.controller.state is CallState.ENDED
        assert alice.devices.live_tracks == []

    @pytest.mark.asyncio
    async def test_enable_video_renegotiates(self, pc_factory):
        _, alice, bob = await make_pair(pc_factory)
        await connect_call(alice, bob)

        await alice.controller.enable_video()

        assert bob.controller.session.media_kind is MediaKind.AUDIO_VIDEO
        assert alice.pc.calls.count("setRemoteDescription:answer") == 2
        assert bob.pc.calls.count("setRemoteDescription:offer") == 2
        assert alice.controller.state is CallState.CONNECTED
        assert bob.controller.state is CallState.CONNECTED
        assert len(alice.controller.local_media.audio_tracks) == 1
        assert len(alice.controller.local_media.video_tracks) == 1

    @pytest.mark.asyncio
    async def test_cannot_start_during_call(self, pc_factory):
        _, alice, bob = await make_pair(pc_factory)
        await connect_call(alice, bob)
        with pytest.raises(NegotiationError):
            await alice.controller.start()

    @pytest.mark.asyncio
    async def test_new_call_after_end(self, pc_factory):
        _, alice, bob = await make_pair(pc_factory)
        await connect_call(alice, bob)
        await alice.controller.end()

        await bob.controller.start(video=True)

        assert bob.controller.state is CallState.OFFER_SENT
        assert alice.incoming[-1].caller_id == "bob"
        assert alice.incoming[-1].is_video

    @pytest.mark.asyncio
    async def test_toggles(self, pc_factory):
        _, alice, bob = await make_pair(pc_factory)
        await connect_call(alice, bob)
        assert alice.controller.toggle_audio() is False
        assert alice.controller.toggle_audio() is True
        assert alice.controller.toggle_video() is False


class TestAnswerTiming:
    @pytest.mark.asyncio
    async def test_answer_waits_for_offer(self, pc_factory):
        _, alice, bob = await make_pair(pc_factory)

        answering = asyncio.create_task(bob.controller.answer())
        await asyncio.sleep(0)
        await alice.controller.start()
        await answering

        assert bob.controller.state is CallState.ANSWERED
        assert bob.incoming == []

    @pytest.mark.asyncio
    async def test_answer_without_offer_times_out(self, pc_factory):
        config = CallConfig({"offer_wait_timeout": 0.01})
        _, _, bob = await make_pair(pc_factory, config=config)
        with pytest.raises(NegotiationError):
            await bob.controller.answer()


class TestRing:
    @pytest.mark.asyncio
    async def test_ring_lifecycle(self, pc_factory):
        ring = RingChannel()
        _, alice, bob = await make_pair(pc_factory, ring=ring)

        await alice.controller.start(video=True)
        record = await ring.get("r1")
        assert record.status is CallStatus.CALLING
        assert record.initiator_id == "alice"
        assert len(bob.incoming) == 1

        await bob.controller.answer()
        assert (await ring.get("r1")).status is CallStatus.ACTIVE

        await bob.controller.end()
        assert (await ring.get("r1")).status is CallStatus.INACTIVE

    @pytest.mark.asyncio
    async def test_ring_before_offer_announces_once(self, pc_factory):
        ring = RingChannel()
        _, alice, bob = await make_pair(pc_factory, ring=ring)

        await ring.notify_incoming("r1", "alice")
        assert [c.source for c in bob.incoming] == ["ring"]

        await alice.controller.start()
        assert len(bob.incoming) == 1
