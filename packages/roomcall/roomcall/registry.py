"""In-memory room registry: room -> members -> connections.

Each room serializes its own membership changes behind an asyncio.Lock,
so concurrent join/leave on one room never lose updates while different
rooms proceed independently. Rooms appear on first join and disappear
when their last member leaves.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

log = logging.getLogger("roomcall.registry")


class Connection(Protocol):
    """Anything the relay can push a JSON message into."""

    async def send_json(self, data: dict) -> None: ...


@dataclass
class Member:
    user_id: str
    connection: Any
    in_call: bool = False


@dataclass
class Room:
    room_id: str
    members: dict[str, Member] = field(default_factory=dict)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    closed: bool = False


class RoomRegistry:
    """Owns every live room. Safe for use from many connection handlers."""

    def __init__(self):
        self._rooms: dict[str, Room] = {}

    def __contains__(self, room_id: str) -> bool:
        return room_id in self._rooms

    def __len__(self) -> int:
        return len(self._rooms)

    def room_ids(self) -> list[str]:
        return list(self._rooms)

    def members(self, room_id: str) -> set[str]:
        """User ids currently in the room (empty set if no such room)."""
        room = self._rooms.get(room_id)
        return set(room.members) if room else set()

    def member(self, room_id: str, user_id: str) -> Member | None:
        room = self._rooms.get(room_id)
        return room.members.get(user_id) if room else None

    def snapshot(self, room_id: str) -> list[dict] | None:
        room = self._rooms.get(room_id)
        if room is None:
            return None
        return [
            {"userId": m.user_id, "inCall": m.in_call}
            for m in room.members.values()
        ]

    async def join(self, room_id: str, user_id: str, connection) -> Member:
        """Register a member, creating the room if absent.

        A second join with the same user id replaces the earlier connection.
        """
        while True:
            room = self._rooms.get(room_id)
            if room is None:
                room = Room(room_id=room_id)
                self._rooms[room_id] = room
                log.info("Room %s created", room_id)

            async with room.lock:
                # The room may have been emptied and dropped while we waited.
                if room.closed:
                    continue
                previous = room.members.get(user_id)
                if previous is not None and previous.connection is not connection:
                    log.info("User %s rejoined room %s on a new connection", user_id, room_id)
                member = Member(user_id=user_id, connection=connection)
                room.members[user_id] = member
                log.info("User %s joined room %s (%d members)",
                         user_id, room_id, len(room.members))
                return member

    async def leave(self, room_id: str, user_id: str, connection) -> list[Member]:
        """Remove a member if it is still bound to `connection`.

        Returns the members remaining in the room, or [] if nothing changed.
        """
        room = self._rooms.get(room_id)
        if room is None:
            return []

        async with room.lock:
            member = room.members.get(user_id)
            if member is None or member.connection is not connection:
                return []
            del room.members[user_id]
            log.info("User %s left room %s", user_id, room_id)

            if not room.members:
                room.closed = True
                if self._rooms.get(room_id) is room:
                    del self._rooms[room_id]
                log.info("Room %s deleted (empty)", room_id)
                return []
            return list(room.members.values())

    async def recipients(
        self, room_id: str, sender_id: str, to_user: str | None = None
    ) -> list[Member]:
        """Members an envelope from `sender_id` should reach."""
        room = self._rooms.get(room_id)
        if room is None:
            return []
        async with room.lock:
            if to_user is not None:
                member = room.members.get(to_user)
                if member is None or to_user == sender_id:
                    return []
                return [member]
            return [m for uid, m in room.members.items() if uid != sender_id]

    async def set_in_call(self, room_id: str, user_id: str, in_call: bool):
        room = self._rooms.get(room_id)
        if room is None:
            return
        async with room.lock:
            member = room.members.get(user_id)
            if member is not None:
                member.in_call = in_call
