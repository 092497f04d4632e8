"""UI-facing call controller for one user in one room.

Routes signaling envelopes from the selector to the current CallSession,
turns incoming offers and ring records into `on_incoming_call`, and exposes
the commands a call screen needs::

    controller = CallController("r1", "alice", selector, devices, ring=ring)
    controller.on_remote_stream = show_stream
    await controller.open()
    await controller.start(video=False)
    ...
    await controller.end()
"""

import asyncio
import logging
from dataclasses import dataclass

import aiohttp

from roomcall.config import CallConfig
from roomcall.envelope import Answer, Candidate, End, Envelope, Offer, PeerLeft, SignalType
from roomcall.errors import CallError, NegotiationError
from roomcall.ice import IceServerProvider
from roomcall.machine import CallState
from roomcall.media import MediaDevices, MediaKind, MediaStream
from roomcall.selector import SignalingSelector
from roomcall.session import CallSession, default_peer_connection

log = logging.getLogger("roomcall.call")

_RING_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, OSError)


@dataclass
class IncomingCall:
    """What the UI shows while a call is ringing."""
    room_id: str
    caller_id: str
    is_video: bool
    source: str  # "ring" or "offer"
    call_id: str | None = None


class CallController:
    def __init__(
        self,
        room_id: str,
        user_id: str,
        selector: SignalingSelector,
        devices: MediaDevices,
        *,
        ring=None,
        config: CallConfig | None = None,
        ice_servers: IceServerProvider | list[dict] | None = None,
        peer_connection_factory=default_peer_connection,
    ):
        self.room_id = room_id
        self.user_id = user_id
        self.selector = selector
        self.devices = devices
        self.ring = ring
        self.session: CallSession | None = None

        self.on_remote_stream = None
        self.on_status_change = None
        self.on_incoming_call = None
        self.on_error = None

        self._config = config or CallConfig()
        self._ice_servers = ice_servers
        self._pc_factory = peer_connection_factory
        self._pending_offer: Offer | None = None
        self._offer_arrived = asyncio.Event()
        self._answer_waiting = False
        self._announced: IncomingCall | None = None
        self._subscriptions = []
        self._tasks: set[asyncio.Task] = set()

    @property
    def state(self) -> CallState | None:
        return self.session.state if self.session else None

    @property
    def in_call(self) -> bool:
        return self.session is not None and not self.session.state.terminal

    @property
    def local_media(self) -> MediaStream | None:
        return self.session.local_media if self.session else None

    @property
    def remote_media(self) -> MediaStream | None:
        return self.session.remote_media if self.session else None

    async def open(self):
        """Subscribe to signaling (connecting and joining if needed) and the ring."""
        handlers = {
            SignalType.OFFER: self._on_offer,
            SignalType.ANSWER: self._on_answer,
            SignalType.CANDIDATE: self._on_candidate,
            SignalType.END: self._on_end,
            SignalType.PEER_LEFT: self._on_peer_left,
        }
        for kind, handler in handlers.items():
            self._subscriptions.append(self.selector.on(kind, handler))
        if not self.selector.connected:
            await self.selector.connect()
            await self.selector.join_room(self.room_id, self.user_id)
        if self.ring is not None:
            self._subscriptions.append(
                await self.ring.listen(self.room_id, self.user_id, self._on_ring))

    async def close(self):
        if self.in_call:
            await self.end()
        for unsubscribe in self._subscriptions:
            unsubscribe()
        self._subscriptions.clear()
        await self.selector.close()

    # -- commands ---------------------------------------------------------

    async def start(self, video: bool = False) -> MediaStream:
        """Place a call to the room. Returns the local media."""
        if self.in_call:
            raise NegotiationError("A call is already in progress")
        self._announced = None
        self.session = self._new_session(MediaKind.AUDIO_VIDEO if video else MediaKind.AUDIO)
        local, _ = await self.session.start()
        if self.ring is not None:
            try:
                await self.ring.notify_incoming(self.room_id, self.user_id, video)
            except _RING_ERRORS as e:
                log.warning("Could not publish ring for room %s: %s", self.room_id, e)
        return local

    async def answer(self) -> MediaStream:
        """Accept the incoming call, waiting for its offer if only the ring arrived."""
        offer = self._pending_offer
        if offer is None:
            self._answer_waiting = True
            try:
                await asyncio.wait_for(self._offer_arrived.wait(), self._config["offer_wait_timeout"])
            except asyncio.TimeoutError:
                raise NegotiationError("No call offer arrived") from None
            finally:
                self._answer_waiting = False
            offer = self._pending_offer
        self._pending_offer = None
        self._offer_arrived.clear()
        self._announced = None

        session = self.session
        if session is None or session.state is not CallState.IDLE:
            session = self.session = self._new_session(self._kind_of(offer), offer.from_user)
        local, _ = await session.answer(offer)
        await self._ring("mark_active")
        return local

    async def decline(self):
        """Refuse the ringing call and tell the caller."""
        offer, self._pending_offer = self._pending_offer, None
        self._offer_arrived.clear()
        self._announced = None
        if offer is not None:
            try:
                await self.selector.send(End(room_id=self.room_id, from_user=self.user_id,
                                             to_user=offer.from_user or None))
            except CallError as e:
                log.warning("Could not send decline: %s", e.detail)
        if self.session is not None and self.session.state is CallState.IDLE:
            await self.session.end(notify_peer=False)
        await self._ring("clear")

    async def end(self):
        if self.session is not None:
            await self.session.end()
        self._pending_offer = None
        self._offer_arrived.clear()
        await self._ring("clear")

    async def enable_video(self) -> dict | None:
        if self.session is None:
            raise NegotiationError("No call in progress")
        return await self.session.enable_video()

    def toggle_audio(self, enabled: bool | None = None) -> bool:
        return self.session.toggle_audio(enabled) if self.session else False

    def toggle_video(self, enabled: bool | None = None) -> bool:
        return self.session.toggle_video(enabled) if self.session else False

    # -- signaling handlers -----------------------------------------------

    async def _on_offer(self, offer: Offer):
        session = self.session
        if session is not None and not session.state.terminal:
            if session.state is CallState.IDLE:
                # Caller re-offered before we accepted; keep the latest.
                self._pending_offer = offer
                self._offer_arrived.set()
                return
            if offer.from_user and offer.from_user == session.peer_id:
                log.info("Renegotiation offer from %s", offer.from_user)
                await self._guard(session.answer(offer))
                return
            log.warning("Ignoring offer from %s while %s", offer.from_user, session.state.value)
            return

        self.session = self._new_session(self._kind_of(offer), offer.from_user or None)
        self._pending_offer = offer
        self._offer_arrived.set()
        if self._answer_waiting:
            return
        if self._announced is not None and self._announced.caller_id == offer.from_user:
            return
        self._announce(IncomingCall(self.room_id, offer.from_user, offer.is_video, "offer"))

    async def _on_answer(self, answer: Answer):
        session = self.session
        if session is None or not self._from_peer(session, answer):
            log.debug("Ignoring answer from %s", answer.from_user)
            return
        await self._guard(session.accept_answer(answer))

    async def _on_candidate(self, candidate: Candidate):
        session = self.session
        if session is None or session.state.terminal or not self._from_peer(session, candidate):
            log.debug("Ignoring candidate from %s", candidate.from_user)
            return
        await session.add_remote_candidate(candidate)

    async def _on_end(self, end: End):
        await self._remote_gone(end, "ended the call")

    async def _on_peer_left(self, left: PeerLeft):
        await self._remote_gone(left, "left the room")

    async def _remote_gone(self, envelope: Envelope, reason: str):
        session = self.session
        if session is None or session.state.terminal or not self._from_peer(session, envelope):
            return
        log.info("Peer %s %s", envelope.from_user, reason)
        self._pending_offer = None
        self._offer_arrived.clear()
        self._announced = None
        await session.handle_remote_end()

    async def _on_ring(self, record):
        if self.in_call:
            return
        self._announce(IncomingCall(record.room_id, record.initiator_id, record.is_video,
                                    "ring", record.call_id))

    # -- helpers ----------------------------------------------------------

    def _new_session(self, kind: MediaKind, peer_id: str | None = None) -> CallSession:
        return CallSession(
            self.room_id,
            self.user_id,
            kind,
            devices=self.devices,
            send=self.selector.send,
            ice_servers=self._ice_servers,
            peer_connection_factory=self._pc_factory,
            config=self._config,
            peer_id=peer_id,
            on_status_change=lambda state: self._notify(self.on_status_change, state),
            on_remote_stream=lambda stream: self._notify(self.on_remote_stream, stream),
            on_error=lambda error: self._notify(self.on_error, error),
        )

    @staticmethod
    def _kind_of(offer: Offer) -> MediaKind:
        return MediaKind.AUDIO_VIDEO if offer.is_video else MediaKind.AUDIO

    @staticmethod
    def _from_peer(session: CallSession, envelope: Envelope) -> bool:
        return session.peer_id is None or envelope.from_user == session.peer_id

    def _announce(self, call: IncomingCall):
        self._announced = call
        log.info("Incoming %s call from %s (%s)",
                 "video" if call.is_video else "audio", call.caller_id, call.source)
        self._notify(self.on_incoming_call, call)

    async def _guard(self, operation):
        try:
            await operation
        except CallError as e:
            log.error("Call operation failed: %s", e.detail)
            self._notify(self.on_error, e)

    async def _ring(self, action: str):
        if self.ring is None:
            return
        try:
            await getattr(self.ring, action)(self.room_id)
        except _RING_ERRORS as e:
            log.warning("Ring %s for room %s failed: %s", action, self.room_id, e)

    def _notify(self, callback, *args):
        if callback is None:
            return
        try:
            result = callback(*args)
        except Exception as e:
            log.error("Callback %s failed: %s", getattr(callback, "__name__", callback), e)
            return
        if asyncio.iscoroutine(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
