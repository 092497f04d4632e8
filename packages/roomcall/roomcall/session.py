"""Call session: one call attempt between two peers of a room.

Owns the aiortc RTCPeerConnection, local and remote media, and the ICE
candidate queue. Drives offer/answer exchange through the pure transitions
in roomcall.machine and performs the effects they ask for.
"""

import asyncio
import logging
from collections import deque
from enum import Enum
from typing import Awaitable, Callable

from aiortc import RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from roomcall.config import CallConfig
from roomcall.envelope import Answer, Candidate, End, Envelope, Offer
from roomcall.errors import (
    CallError,
    NegotiationError,
    TransientNetworkFailure,
)
from roomcall.ice import IceServerProvider, resolve_ice_servers, rtc_configuration
from roomcall.machine import CallEvent, CallState, Effect, allowed_events, transition
from roomcall.media import MediaConstraints, MediaDevices, MediaKind, MediaStream

log = logging.getLogger("roomcall.session")


class Role(str, Enum):
    CALLER = "caller"
    CALLEE = "callee"


def default_peer_connection(configuration) -> RTCPeerConnection:
    return RTCPeerConnection(configuration=configuration)


def local_candidates_from_sdp(sdp: str) -> list[tuple[str, str | None, int]]:
    """(candidate attribute, mid, m-line index) for every a=candidate line."""
    result = []
    sections: list[list[str]] = []
    for line in sdp.splitlines():
        if line.startswith("m="):
            sections.append([])
        elif sections:
            sections[-1].append(line)

    for index, lines in enumerate(sections):
        mid = next((line[len("a=mid:"):] for line in lines if line.startswith("a=mid:")), None)
        for line in lines:
            if line.startswith("a=candidate:"):
                result.append((line[len("a="):], mid, index))
    return result


class CallSession:
    """One call attempt. Create a new session for every call.

    Callbacks (sync or async):
        on_status_change(state: str)        call state transitions
        on_connectivity_change(state: str)  new/connecting/connected/disconnected/failed/closed
        on_remote_stream(stream)            remote tracks arrived or changed
        on_error(error: CallError)          failures with no caller to raise to
    """

    def __init__(
        self,
        room_id: str,
        user_id: str,
        media_kind: MediaKind = MediaKind.AUDIO,
        *,
        devices: MediaDevices,
        send: Callable[[Envelope], Awaitable[None]] | None = None,
        ice_servers: IceServerProvider | list[dict] | None = None,
        peer_connection_factory=default_peer_connection,
        config: CallConfig | None = None,
        peer_id: str | None = None,
        on_status_change=None,
        on_connectivity_change=None,
        on_remote_stream=None,
        on_error=None,
    ):
        self.room_id = room_id
        self.user_id = user_id
        self.media_kind = media_kind
        self.peer_id = peer_id
        self.role: Role | None = None
        self.state = CallState.IDLE
        self.connectivity = "new"

        self.local_media: MediaStream | None = None
        self.remote_media = MediaStream()
        self.pending_remote_candidates: deque[Candidate] = deque()
        self.gathered_local_candidates: list[Candidate] = []

        self.on_status_change = on_status_change
        self.on_connectivity_change = on_connectivity_change
        self.on_remote_stream = on_remote_stream
        self.on_error = on_error

        self._devices = devices
        self._send_fn = send
        self._ice_servers = ice_servers
        self._pc_factory = peer_connection_factory
        self._config = config or CallConfig()
        self._pc = None
        self._peer_closed = False
        self._busy = False
        self._flushing = False
        self._restarts = 0
        self._recovery: asyncio.Task | None = None
        self._signaled = False
        self._end_sent = False
        self._unsent_candidates = 0
        self._tasks: set[asyncio.Task] = set()

    @property
    def peer_connection(self):
        return self._pc

    @property
    def has_remote_description(self) -> bool:
        return self._pc is not None and self._pc.remoteDescription is not None

    # -- commands ---------------------------------------------------------

    async def start(self) -> tuple[MediaStream, dict]:
        """Acquire media, create the local offer and send it.

        Returns the local media and the offer description.
        """
        self._begin(CallEvent.START)
        try:
            self.role = Role.CALLER
            self._apply(CallEvent.START)
            self.local_media = await self._devices.get_user_media(
                MediaConstraints.for_kind(self.media_kind))
            self._ensure_live()

            pc = await self._build_peer_connection()
            offer = await self._set_local(pc.createOffer)
            self._apply(CallEvent.OFFER_CREATED)
            await self._send(Offer(room_id=self.room_id, sdp=offer["sdp"],
                                   is_video=self.media_kind.has_video))
            await self._send_local_candidates()
            return self.local_media, offer
        except Exception as e:
            await self._fail(e)
        finally:
            self._busy = False

    async def answer(self, remote_offer: Offer) -> tuple[MediaStream, dict]:
        """Accept an offer: remote description first, then the local answer.

        On a connected call this answers a renegotiation offer instead.
        """
        if self._pc is not None and self.state in (CallState.ANSWERED, CallState.CONNECTED):
            return self.local_media, await self._answer_renegotiation(remote_offer)

        self._begin(CallEvent.ACCEPT_OFFER)
        try:
            self.role = Role.CALLEE
            self.peer_id = remote_offer.from_user or self.peer_id
            self._signaled = True
            self._apply(CallEvent.ACCEPT_OFFER)
            self.local_media = await self._devices.get_user_media(
                MediaConstraints.for_kind(self.media_kind))
            self._ensure_live()

            pc = await self._build_peer_connection()
            await pc.setRemoteDescription(RTCSessionDescription(sdp=remote_offer.sdp, type="offer"))
            answer = await self._set_local(pc.createAnswer)
            effects = self._apply(CallEvent.ANSWER_CREATED)
            await self._send(Answer(room_id=self.room_id, sdp=answer["sdp"]))
            await self._perform(effects)
            await self._send_local_candidates()
            return self.local_media, answer
        except Exception as e:
            await self._fail(e)
        finally:
            self._busy = False

    async def accept_answer(self, remote_answer: Answer) -> None:
        """Apply the callee's answer to our outstanding offer."""
        if self.state.terminal:
            log.info("Ignoring answer for finished call in room %s", self.room_id)
            return
        if self._pc is None or CallEvent.REMOTE_ANSWER not in allowed_events(self.state):
            raise NegotiationError(f"Unexpected answer while {self.state.value}")

        self.peer_id = remote_answer.from_user or self.peer_id
        try:
            await self._pc.setRemoteDescription(
                RTCSessionDescription(sdp=remote_answer.sdp, type="answer"))
            effects = self._apply(CallEvent.REMOTE_ANSWER)
            await self._perform(effects)
        except Exception as e:
            await self._fail(e)
        await self._maybe_connected()

    async def add_remote_candidate(self, candidate: Candidate) -> None:
        """Apply now if the remote description is set, else queue in arrival order."""
        if self.state.terminal:
            log.debug("Ignoring candidate for finished call")
            return
        if self.has_remote_description and not self.pending_remote_candidates and not self._flushing:
            await self._add_ice_candidate(candidate)
        else:
            self.pending_remote_candidates.append(candidate)
            log.debug("Queued ICE candidate (%d pending)", len(self.pending_remote_candidates))

    async def enable_video(self) -> dict | None:
        """Add a camera track to a connected audio call and send a new offer.

        The audio track keeps flowing; returns the renegotiation offer, or
        None if video is already on.
        """
        if self.state is not CallState.CONNECTED:
            raise NegotiationError("Video can only be enabled on a connected call")
        if self.media_kind.has_video:
            log.info("Video already enabled")
            return None

        self._begin(CallEvent.RENEGOTIATE)
        try:
            video = await self._devices.get_user_media(MediaConstraints.video_only())
        except Exception:
            # Camera refusal leaves the audio call untouched.
            self._busy = False
            raise

        try:
            self._ensure_live()
            for track in video.tracks:
                self.local_media.add_track(track)
                self._pc.addTrack(track)
            self.media_kind = MediaKind.AUDIO_VIDEO
            self._apply(CallEvent.RENEGOTIATE)

            offer = await self._set_local(self._pc.createOffer)
            await self._send(Offer(room_id=self.room_id, sdp=offer["sdp"], is_video=True))
            await self._send_local_candidates()
            return offer
        except Exception as e:
            video.stop()
            await self._fail(e)
        finally:
            self._busy = False

    def toggle_audio(self, enabled: bool | None = None) -> bool:
        return self._toggle("audio", enabled)

    def toggle_video(self, enabled: bool | None = None) -> bool:
        return self._toggle("video", enabled)

    async def end(self, notify_peer: bool = True) -> None:
        """Hang up. Releases media and closes the peer; repeated calls do nothing."""
        self._cancel_recovery()
        if self.state.terminal:
            return
        effects = self._apply(CallEvent.HANGUP if notify_peer else CallEvent.REMOTE_END)
        await self._perform(effects)

    async def handle_remote_end(self) -> None:
        await self.end(notify_peer=False)

    # -- negotiation helpers ----------------------------------------------

    def _begin(self, event: CallEvent):
        if self._busy:
            raise NegotiationError("Another negotiation is already in progress")
        if event not in allowed_events(self.state):
            raise NegotiationError(f"Cannot {event.value} while {self.state.value}")
        self._busy = True

    def _ensure_live(self):
        if self.state.terminal:
            raise NegotiationError("Call ended during setup")

    def _apply(self, event: CallEvent) -> tuple[Effect, ...]:
        previous = self.state
        self.state, effects = transition(self.state, event)
        if self.state is not previous:
            log.info("Call %s/%s (%s): %s -> %s", self.room_id, self.user_id,
                     self.role.value if self.role else "-", previous.value, self.state.value)
            self._notify(self.on_status_change, self.state.value)
        return effects

    async def _perform(self, effects: tuple[Effect, ...]):
        for effect in effects:
            if effect is Effect.RELEASE_MEDIA:
                self._release_media()
            elif effect is Effect.CLOSE_PEER:
                await self._close_peer()
            elif effect is Effect.SEND_END:
                await self._send_end()
            elif effect is Effect.FLUSH_CANDIDATES:
                await self._flush_candidates()
            elif effect is Effect.RESTART_ICE:
                await self._restart_connectivity()

    async def _build_peer_connection(self):
        servers = await resolve_ice_servers(self._ice_servers)
        self._ensure_live()
        pc = self._pc_factory(rtc_configuration(servers))
        self._pc = pc

        @pc.on("connectionstatechange")
        async def on_connection_state():
            await self._on_connection_state(pc.connectionState)

        @pc.on("track")
        def on_track(track):
            log.info("Received remote %s track", track.kind)
            self.remote_media.replace_kind(track)
            self._notify(self.on_remote_stream, self.remote_media)

        for track in self.local_media.tracks:
            pc.addTrack(track)
        return pc

    async def _set_local(self, create) -> dict:
        description = await create()
        await self._pc.setLocalDescription(description)
        self._signaled = True
        self._collect_local_candidates()
        local = self._pc.localDescription
        return {"type": local.type, "sdp": local.sdp}

    async def _answer_renegotiation(self, remote_offer: Offer) -> dict:
        self._begin(CallEvent.ANSWER_CREATED)
        try:
            await self._pc.setRemoteDescription(
                RTCSessionDescription(sdp=remote_offer.sdp, type="offer"))
            answer = await self._set_local(self._pc.createAnswer)
            if remote_offer.is_video:
                self.media_kind = MediaKind.AUDIO_VIDEO
            effects = self._apply(CallEvent.ANSWER_CREATED)
            await self._send(Answer(room_id=self.room_id, sdp=answer["sdp"]))
            await self._perform(effects)
            await self._send_local_candidates()
            return answer
        except Exception as e:
            await self._fail(e)
        finally:
            self._busy = False

    # -- candidates -------------------------------------------------------

    async def _flush_candidates(self):
        if self._flushing:
            return
        self._flushing = True
        try:
            while self.pending_remote_candidates and self.has_remote_description:
                await self._add_ice_candidate(self.pending_remote_candidates.popleft())
        finally:
            self._flushing = False

    async def _add_ice_candidate(self, candidate: Candidate):
        value = candidate.candidate
        if value.startswith("candidate:"):
            value = value[len("candidate:"):]
        try:
            ice = candidate_from_sdp(value)
            ice.sdpMid = candidate.sdp_mid
            ice.sdpMLineIndex = candidate.sdp_mline_index
            await self._pc.addIceCandidate(ice)
        except Exception as e:
            log.warning("Error adding remote ICE candidate %r: %s", candidate.candidate, e)

    def _collect_local_candidates(self):
        known = {c.candidate for c in self.gathered_local_candidates}
        for value, mid, index in local_candidates_from_sdp(self._pc.localDescription.sdp):
            if value in known:
                continue
            known.add(value)
            self.gathered_local_candidates.append(Candidate(
                room_id=self.room_id, candidate=value, sdp_mid=mid, sdp_mline_index=index))
            self._unsent_candidates += 1

    async def _send_local_candidates(self):
        fresh = self.gathered_local_candidates[len(self.gathered_local_candidates) - self._unsent_candidates:]
        self._unsent_candidates = 0
        if not self._config["trickle_local_candidates"]:
            return
        for candidate in fresh:
            await self._send(candidate)

    # -- connectivity -----------------------------------------------------

    async def _on_connection_state(self, state: str):
        self.connectivity = state
        log.info("Connection state: %s", state)
        self._notify(self.on_connectivity_change, state)
        if self.state.terminal:
            return
        try:
            if state == "connected":
                self._restarts = 0
                self._cancel_recovery()
                await self._maybe_connected()
            elif state == "failed":
                await self._on_transport_failed()
        except Exception as e:
            await self._fail(e, reraise=False)

    async def _maybe_connected(self):
        if self.connectivity != "connected" or self.state.terminal:
            return
        if self._pc is None or self._pc.localDescription is None or self._pc.remoteDescription is None:
            return
        if CallEvent.TRANSPORT_CONNECTED in allowed_events(self.state):
            await self._perform(self._apply(CallEvent.TRANSPORT_CONNECTED))

    async def _on_transport_failed(self):
        if CallEvent.TRANSPORT_FAILED not in allowed_events(self.state):
            raise TransientNetworkFailure(f"Connection failed while {self.state.value}")
        if self._restarts < self._config["ice_restart_attempts"]:
            self._restarts += 1
            await self._perform(self._apply(CallEvent.TRANSPORT_FAILED))
            return
        await self._give_up_connectivity()

    async def _restart_connectivity(self):
        """Re-offer from the caller, then give the transport a bounded window.

        aiortc reports "failed" once and never leaves it, so recovery is
        judged by a timer rather than by a second failure event.
        """
        pc = self._pc
        if pc is None:
            return
        log.warning("Connection failed, restarting connectivity (attempt %d)", self._restarts)
        self._cancel_recovery()
        self._recovery = asyncio.ensure_future(self._await_recovery(pc))
        if self.role is Role.CALLER:
            offer = await self._set_local(pc.createOffer)
            await self._send(Offer(room_id=self.room_id, sdp=offer["sdp"],
                                   is_video=self.media_kind.has_video))
            await self._send_local_candidates()

    async def _await_recovery(self, pc):
        await asyncio.sleep(self._config["ice_restart_timeout"])
        if pc is not self._pc or self.state.terminal or self.connectivity == "connected":
            return
        self._recovery = None
        try:
            await self._give_up_connectivity()
        except Exception as e:
            await self._fail(e, reraise=False)

    async def _give_up_connectivity(self):
        log.error("Connectivity not restored in room %s, giving up", self.room_id)
        await self._perform(self._apply(CallEvent.RESTART_EXHAUSTED))
        self._notify(self.on_error, TransientNetworkFailure())

    def _cancel_recovery(self):
        task, self._recovery = self._recovery, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    # -- teardown ---------------------------------------------------------

    def _release_media(self):
        if self.local_media is not None:
            self.local_media.stop()
            log.info("Local media released")

    async def _close_peer(self):
        self._cancel_recovery()
        pc = self._pc
        if pc is None or self._peer_closed:
            return
        self._peer_closed = True
        await pc.close()

    async def _send_end(self):
        if self._end_sent or not self._signaled:
            return
        self._end_sent = True
        try:
            await self._send(End(room_id=self.room_id))
        except CallError as e:
            log.warning("Could not deliver end signal: %s", e.detail)

    async def _fail(self, exc: Exception, reraise: bool = True):
        error = exc if isinstance(exc, CallError) else NegotiationError(str(exc) or type(exc).__name__)
        log.error("Call %s/%s failed: %s", self.room_id, self.user_id, error.detail)
        if self.state.terminal:
            self._release_media()
            await self._close_peer()
        else:
            await self._perform(self._apply(CallEvent.ERROR))
        if reraise:
            if error is exc:
                raise error
            raise error from exc
        self._notify(self.on_error, error)

    # -- plumbing ---------------------------------------------------------

    async def _send(self, envelope: Envelope):
        if self._send_fn is None:
            return
        envelope.room_id = self.room_id
        envelope.from_user = self.user_id
        envelope.to_user = self.peer_id
        await self._send_fn(envelope)

    def _toggle(self, kind: str, enabled: bool | None) -> bool:
        if self.local_media is None:
            return False
        if enabled is None:
            enabled = not self.local_media.is_enabled(kind)
        if not self.local_media.set_enabled(kind, enabled):
            return False
        log.info("Local %s %s", kind, "enabled" if enabled else "muted")
        return enabled

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
