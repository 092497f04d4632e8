"""Signaling relay: forwards call envelopes between members of a room.

Handles the join -> joined, offer/answer/candidate/end forwarding, and
peer_left lifecycle. Payloads are forwarded as received; the relay only
reads the routing header.
"""

import logging
from dataclasses import dataclass

from fastapi import WebSocketDisconnect

from roomcall.envelope import ROUTABLE, SignalType, decode, read_header
from roomcall.errors import MalformedEnvelope
from roomcall.registry import RoomRegistry

log = logging.getLogger("roomcall.relay")


@dataclass
class RelayPeer:
    """Per-connection relay state."""
    connection: object
    default_user: str | None = None
    room_id: str | None = None
    user_id: str | None = None

    @property
    def joined(self) -> bool:
        return self.room_id is not None


class SignalRelay:
    """Room-multiplexed signaling relay.

    Usage with FastAPI:
        relay = SignalRelay()

        @app.websocket("/socket")
        async def socket_endpoint(websocket: WebSocket):
            await relay.handle(websocket)
    """

    def __init__(self, registry: RoomRegistry | None = None):
        self.registry = registry or RoomRegistry()

    async def handle(self, websocket, user_id: str | None = None):
        """Run one websocket connection until it closes."""
        await websocket.accept()
        peer = RelayPeer(connection=websocket, default_user=user_id)
        log.info("New client connected")

        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                # Binary frames carry the same JSON; decode() rejects bad UTF-8.
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes")
                if raw is None:
                    continue
                await self.dispatch(peer, raw)
        except WebSocketDisconnect:
            pass
        finally:
            log.info("Client disconnected")
            await self.disconnect(peer)

    async def dispatch(self, peer: RelayPeer, raw) -> None:
        """Process one inbound message. Never raises for bad input."""
        try:
            msg = decode(raw)
            header = read_header(msg)
        except MalformedEnvelope as e:
            log.warning("Dropping malformed envelope: %s", e.detail)
            return

        kind = header.type
        if kind is SignalType.JOIN:
            await self._join(peer, header.room_id, header.from_user or peer.default_user)
        elif kind in ROUTABLE:
            await self._route(peer, kind, header.room_id, header.to_user, msg)
        elif kind is SignalType.PING:
            await self._send(peer.connection, {"type": SignalType.PONG.value})
        else:
            log.warning("Dropping %s from client; relay-only message type", kind.value)

    async def _join(self, peer: RelayPeer, room_id: str | None, user_id: str | None):
        if not room_id or not user_id:
            log.warning("Dropping join without roomId/userId")
            return
        if peer.joined and (peer.room_id, peer.user_id) != (room_id, user_id):
            await self.disconnect(peer)

        await self.registry.join(room_id, user_id, peer.connection)
        peer.room_id, peer.user_id = room_id, user_id
        await self._send(peer.connection, {
            "type": SignalType.JOINED.value,
            "roomId": room_id,
            "userId": user_id,
        })

    async def _route(self, peer: RelayPeer, kind: SignalType, room_id, to_user, msg: dict):
        if not peer.joined:
            log.error("Client tried to send %s without joining a room first", kind.value)
            return
        if room_id and room_id != peer.room_id:
            log.warning("Dropping %s for room %s from %s (joined %s)",
                        kind.value, room_id, peer.user_id, peer.room_id)
            return

        if kind in (SignalType.OFFER, SignalType.ANSWER):
            await self.registry.set_in_call(peer.room_id, peer.user_id, True)
        elif kind is SignalType.END:
            await self.registry.set_in_call(peer.room_id, peer.user_id, False)

        recipients = await self.registry.recipients(peer.room_id, peer.user_id, to_user)
        if not recipients:
            log.debug("No recipient for %s from %s in room %s",
                      kind.value, peer.user_id, peer.room_id)
            return

        forwarded = {**msg, "roomId": peer.room_id, "from": peer.user_id}
        for member in recipients:
            log.debug("Forwarding %s from %s to %s", kind.value, peer.user_id, member.user_id)
            await self._send(member.connection, forwarded)
            if kind is SignalType.END:
                await self.registry.set_in_call(peer.room_id, member.user_id, False)

    async def disconnect(self, peer: RelayPeer) -> None:
        """Drop the peer's membership and tell the rest of the room."""
        if not peer.joined:
            return
        room_id, user_id = peer.room_id, peer.user_id
        peer.room_id = peer.user_id = None

        remaining = await self.registry.leave(room_id, user_id, peer.connection)
        for member in remaining:
            await self._send(member.connection, {
                "type": SignalType.PEER_LEFT.value,
                "roomId": room_id,
                "userId": user_id,
            })

    @staticmethod
    async def _send(connection, data: dict):
        try:
            await connection.send_json(data)
        except Exception as e:
            log.warning("Send failed, recipient likely gone: %s", e)
