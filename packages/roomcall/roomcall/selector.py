"""Signaling transport selection.

SignalingSelector opens the primary channel (websocket) and falls back to the
secondary one (mailbox) when it cannot connect. Exactly one channel is live
at a time, so each envelope is delivered to handlers once. An unexpected
close is retried with bounded exponential backoff before switching to the
fallback, and only then reported as SignalingUnavailable.
"""

import asyncio
import logging

import aiohttp

from roomcall.channels import SignalingChannel
from roomcall.config import CallConfig
from roomcall.envelope import Envelope, SignalType, parse_envelope
from roomcall.errors import CallError, MalformedEnvelope, SignalingUnavailable

log = logging.getLogger("roomcall.selector")

_OPEN_ERRORS = (asyncio.TimeoutError, OSError, aiohttp.ClientError, CallError)


def backoff_delay(attempt: int, base: float, ceiling: float) -> float:
    """Delay before retry `attempt` (0-based): base * 2**attempt, capped."""
    return min(base * (2 ** attempt), ceiling)


class SignalingSelector:
    def __init__(self, primary: SignalingChannel, fallback: SignalingChannel | None = None,
                 config: CallConfig | None = None, *, sleep=asyncio.sleep):
        self.primary = primary
        self.fallback = fallback
        self.on_failure = None
        self.on_transport_change = None
        self._config = config or CallConfig()
        self._sleep = sleep
        self._active: SignalingChannel | None = None
        self._handlers: dict[str, list] = {}
        self._room_id: str | None = None
        self._user_id: str | None = None
        self._closed = False
        self._reconnect_task: asyncio.Task | None = None

    @property
    def active(self) -> SignalingChannel | None:
        return self._active

    @property
    def transport(self) -> str | None:
        return self._active.name if self._active else None

    @property
    def connected(self) -> bool:
        return self._active is not None and self._active.connected

    async def connect(self) -> str:
        """Open the primary channel, else the fallback. Returns the transport name."""
        self._closed = False
        for channel in (self.primary, self.fallback):
            if channel is None:
                continue
            if await self._open(channel):
                self._activate(channel)
                return channel.name
        raise SignalingUnavailable()

    async def join_room(self, room_id: str, user_id: str):
        """Join on the active channel; remembered for rejoin after reconnect."""
        if self._active is None:
            raise SignalingUnavailable("Not connected")
        self._room_id, self._user_id = room_id, user_id
        await self._active.join(room_id, user_id)
        log.info("Joined room %s as %s via %s", room_id, user_id, self._active.name)

    async def send(self, envelope: Envelope | dict):
        channel = self._active
        if channel is None or not channel.connected:
            raise SignalingUnavailable("Cannot send message, no signaling transport")
        msg = envelope.to_wire() if isinstance(envelope, Envelope) else envelope
        await channel.send(msg)

    def on(self, kind, handler):
        """Register `handler(envelope)` for one envelope type. Returns an unsubscribe."""
        key = SignalType(kind).value
        self._handlers.setdefault(key, []).append(handler)

        def unsubscribe():
            handlers = self._handlers.get(key, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    async def close(self):
        self._closed = True
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        channel, self._active = self._active, None
        if channel is not None:
            await channel.close()

    # -- channel callbacks ------------------------------------------------

    async def _on_channel_message(self, channel: SignalingChannel, msg: dict):
        if channel is not self._active:
            log.debug("Ignoring message from inactive %s channel", channel.name)
            return
        try:
            envelope = parse_envelope(msg)
        except MalformedEnvelope as e:
            log.warning("Dropping malformed envelope: %s", e.detail)
            return

        for handler in list(self._handlers.get(envelope.type.value, ())):
            try:
                result = handler(envelope)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                log.error("Handler for %s failed: %s", envelope.type.value, e)

    async def _on_channel_closed(self, channel: SignalingChannel):
        if channel is not self._active or self._closed:
            return
        log.warning("Signaling transport %s closed unexpectedly", channel.name)
        self._active = None
        self._reconnect_task = asyncio.create_task(self._reconnect(channel))

    # -- connection management ---------------------------------------------

    async def _open(self, channel: SignalingChannel) -> bool:
        channel.set_listener(self._on_channel_message, self._on_channel_closed)
        try:
            await asyncio.wait_for(channel.open(), self._config["connect_timeout"])
        except _OPEN_ERRORS as e:
            log.warning("Signaling transport %s unavailable: %s", channel.name, e or type(e).__name__)
            return False
        return True

    def _activate(self, channel: SignalingChannel):
        self._active = channel
        log.info("Signaling via %s", channel.name)
        if self.on_transport_change is not None:
            self.on_transport_change(channel.name)

    async def _resume(self, channel: SignalingChannel) -> bool:
        """Open `channel`, make it active and rejoin the remembered room."""
        if not await self._open(channel):
            return False
        self._active = channel
        if self._room_id is not None:
            try:
                await channel.join(self._room_id, self._user_id)
            except _OPEN_ERRORS as e:
                log.warning("Rejoin via %s failed: %s", channel.name, e)
                self._active = None
                await self._discard(channel)
                return False
        self._active = None
        self._activate(channel)
        return True

    async def _discard(self, channel: SignalingChannel):
        try:
            await channel.close()
        except (OSError, aiohttp.ClientError) as e:
            log.debug("Error closing %s channel: %s", channel.name, e)

    async def _reconnect(self, lost: SignalingChannel):
        attempts = self._config["reconnect_max_attempts"]
        base = self._config["reconnect_base_delay"]
        ceiling = self._config["reconnect_max_delay"]

        await self._discard(lost)
        for attempt in range(attempts):
            delay = backoff_delay(attempt, base, ceiling)
            log.info("Reconnecting %s in %.1fs (attempt %d/%d)",
                     lost.name, delay, attempt + 1, attempts)
            await self._sleep(delay)
            if self._closed:
                return
            if await self._resume(lost):
                return

        if lost is self.primary and self.fallback is not None and not self._closed:
            log.warning("Giving up on %s, switching to %s", lost.name, self.fallback.name)
            if await self._resume(self.fallback):
                return

        log.error("Signaling unavailable after %d reconnect attempts", attempts)
        error = SignalingUnavailable()
        if self.on_failure is not None:
            result = self.on_failure(error)
            if asyncio.iscoroutine(result):
                await result
