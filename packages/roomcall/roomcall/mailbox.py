"""Store-and-forward side of the relay.

Clients that cannot hold a websocket open exchange envelopes through a
per-user mailbox over plain HTTP: they post outbound envelopes and
long-poll for inbound ones. A mailbox is registered in the same room
registry as websocket members, so both kinds of client reach each other.
"""

import asyncio
import logging
import time
from collections import deque

from roomcall.envelope import SignalType
from roomcall.relay import RelayPeer, SignalRelay

log = logging.getLogger("roomcall.mailbox")


class MailboxConnection:
    """Queue of envelopes waiting for one user to collect them."""

    def __init__(self):
        self._messages: deque[dict] = deque()
        self._ready = asyncio.Event()
        self.last_seen = time.monotonic()

    async def send_json(self, data: dict) -> None:
        self._messages.append(data)
        self._ready.set()

    @property
    def pending(self) -> int:
        return len(self._messages)

    async def drain(self, wait: float = 0.0) -> list[dict]:
        """Return every queued message, waiting up to `wait` seconds for one."""
        self.last_seen = time.monotonic()
        if not self._messages and wait > 0:
            try:
                await asyncio.wait_for(self._ready.wait(), timeout=wait)
            except asyncio.TimeoutError:
                pass
        messages = list(self._messages)
        self._messages.clear()
        self._ready.clear()
        self.last_seen = time.monotonic()
        return messages


class MailboxHub:
    """Maps (room, user) to a mailbox-backed relay peer."""

    def __init__(self, relay: SignalRelay, lease: float = 60.0):
        self._relay = relay
        self._lease = lease
        self._peers: dict[tuple[str, str], RelayPeer] = {}

    def __contains__(self, key: tuple[str, str]) -> bool:
        return key in self._peers

    async def join(self, room_id: str, user_id: str) -> list[dict]:
        """Join through the relay; returns the joined ack."""
        key = (room_id, user_id)
        peer = self._peers.get(key)
        if peer is None:
            peer = RelayPeer(connection=MailboxConnection())
            self._peers[key] = peer
        await self._relay.dispatch(peer, {
            "type": SignalType.JOIN.value,
            "roomId": room_id,
            "userId": user_id,
        })
        return await peer.connection.drain()

    async def send(self, room_id: str, user_id: str, message: dict) -> bool:
        peer = self._peers.get((room_id, user_id))
        if peer is None:
            return False
        peer.connection.last_seen = time.monotonic()
        await self._relay.dispatch(peer, message)
        return True

    async def poll(self, room_id: str, user_id: str, wait: float = 0.0) -> list[dict] | None:
        peer = self._peers.get((room_id, user_id))
        if peer is None:
            return None
        return await peer.connection.drain(wait)

    async def leave(self, room_id: str, user_id: str) -> bool:
        peer = self._peers.pop((room_id, user_id), None)
        if peer is None:
            return False
        await self._relay.disconnect(peer)
        return True

    async def expire_idle(self, now: float | None = None) -> int:
        """Treat mailboxes not polled within the lease as disconnected."""
        now = time.monotonic() if now is None else now
        stale = [
            key for key, peer in self._peers.items()
            if now - peer.connection.last_seen > self._lease
        ]
        for room_id, user_id in stale:
            log.info("Mailbox %s/%s expired", room_id, user_id)
            await self.leave(room_id, user_id)
        return len(stale)

    async def run_reaper(self, interval: float | None = None):
        """Background loop expiring idle mailboxes."""
        interval = interval or max(self._lease / 2, 1.0)
        while True:
            await asyncio.sleep(interval)
            try:
                await self.expire_idle()
            except Exception as e:
                log.error("Mailbox reaper failed: %s", e)
