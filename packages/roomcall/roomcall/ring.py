"""Ring notifications: one current call record per room.

The ring only tells a callee that a call is waiting. Offers, answers and
candidates travel exclusively through the signaling envelopes, so a lost or
stale ring record can never affect negotiation.

RingChannel is the in-process store the relay serves over HTTP;
RemoteRingChannel is the client that polls it.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from urllib.parse import quote

import aiohttp

log = logging.getLogger("roomcall.ring")


class CallStatus(str, Enum):
    CALLING = "calling"
    ACTIVE = "active"
    INACTIVE = "inactive"


@dataclass
class CallMetadata:
    room_id: str
    initiator_id: str
    is_video: bool = False
    status: CallStatus = CallStatus.CALLING
    call_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    updated_at: float = field(default_factory=time.time)

    @property
    def live(self) -> bool:
        return self.status is not CallStatus.INACTIVE

    def rings_for(self, user_id: str) -> bool:
        """True if this record is an unanswered call from someone else."""
        return self.status is CallStatus.CALLING and self.initiator_id != user_id

    def to_dict(self) -> dict:
        return {
            "roomId": self.room_id,
            "initiatorId": self.initiator_id,
            "isVideo": self.is_video,
            "status": self.status.value,
            "callId": self.call_id,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict, room_id: str | None = None) -> "CallMetadata":
        kwargs = {
            "room_id": room_id or data["roomId"],
            "initiator_id": data["initiatorId"],
            "is_video": bool(data.get("isVideo", False)),
            "status": CallStatus(data.get("status", CallStatus.CALLING.value)),
        }
        if data.get("callId"):
            kwargs["call_id"] = data["callId"]
        if data.get("updatedAt") is not None:
            kwargs["updated_at"] = float(data["updatedAt"])
        return cls(**kwargs)


class _Listener:
    """Fires `handler` at most once per call id."""

    def __init__(self, user_id: str, handler):
        self.user_id = user_id
        self.handler = handler
        self.seen: set[str] = set()

    async def offer(self, record: CallMetadata | None):
        if record is None or not record.rings_for(self.user_id):
            return
        if record.call_id in self.seen:
            return
        self.seen.add(record.call_id)
        try:
            result = self.handler(record)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            log.error("Ring listener for %s failed: %s", self.user_id, e)


class RingChannel:
    """In-process ring store. Last writer wins per room."""

    def __init__(self):
        self._records: dict[str, CallMetadata] = {}
        self._listeners: dict[str, list[_Listener]] = {}

    async def get(self, room_id: str) -> CallMetadata | None:
        return self._records.get(room_id)

    async def publish(self, record: CallMetadata) -> CallMetadata:
        record.updated_at = time.time()
        self._records[record.room_id] = record
        log.info("Call record for room %s: %s by %s (%s)", record.room_id,
                 record.status.value, record.initiator_id, "video" if record.is_video else "audio")
        for listener in list(self._listeners.get(record.room_id, ())):
            await listener.offer(record)
        return record

    async def notify_incoming(self, room_id: str, caller_id: str, is_video: bool = False) -> CallMetadata:
        return await self.publish(CallMetadata(room_id, caller_id, is_video))

    async def mark_active(self, room_id: str) -> CallMetadata | None:
        record = self._records.get(room_id)
        if record is None or record.status is CallStatus.ACTIVE:
            return record
        record.status = CallStatus.ACTIVE
        return await self.publish(record)

    async def clear(self, room_id: str) -> CallMetadata | None:
        record = self._records.get(room_id)
        if record is None or record.status is CallStatus.INACTIVE:
            return record
        record.status = CallStatus.INACTIVE
        return await self.publish(record)

    async def listen(self, room_id: str, local_user_id: str, handler):
        """Call `handler(record)` whenever someone else starts a call in the room.

        Fires right away if such a call is already ringing. Returns an
        unsubscribe function.
        """
        listener = _Listener(local_user_id, handler)
        self._listeners.setdefault(room_id, []).append(listener)
        await listener.offer(self._records.get(room_id))

        def unsubscribe():
            listeners = self._listeners.get(room_id, [])
            if listener in listeners:
                listeners.remove(listener)
            if not listeners:
                self._listeners.pop(room_id, None)

        return unsubscribe


class RemoteRingChannel:
    """Ring client for the relay's /rooms/{roomId}/call endpoints."""

    def __init__(self, base_url: str, poll_interval: float = 2.0):
        self.base_url = base_url.rstrip("/")
        self._poll_interval = poll_interval
        self._session: aiohttp.ClientSession | None = None
        self._pollers: set[asyncio.Task] = set()

    def _url(self, room_id: str) -> str:
        return f"{self.base_url}/rooms/{quote(room_id, safe='')}/call"

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def get(self, room_id: str) -> CallMetadata | None:
        async with self._client().get(self._url(room_id)) as resp:
            if resp.status == 404:
                return None
            resp.raise_for_status()
            return CallMetadata.from_dict(await resp.json(), room_id)

    async def publish(self, record: CallMetadata) -> CallMetadata:
        async with self._client().put(self._url(record.room_id), json=record.to_dict()) as resp:
            resp.raise_for_status()
            return CallMetadata.from_dict(await resp.json(), record.room_id)

    async def notify_incoming(self, room_id: str, caller_id: str, is_video: bool = False) -> CallMetadata:
        return await self.publish(CallMetadata(room_id, caller_id, is_video))

    async def mark_active(self, room_id: str) -> CallMetadata | None:
        record = await self.get(room_id)
        if record is None or record.status is CallStatus.ACTIVE:
            return record
        record.status = CallStatus.ACTIVE
        return await self.publish(record)

    async def clear(self, room_id: str) -> CallMetadata | None:
        async with self._client().delete(self._url(room_id)) as resp:
            if resp.status == 404:
                return None
            resp.raise_for_status()
            return CallMetadata.from_dict(await resp.json(), room_id)

    async def listen(self, room_id: str, local_user_id: str, handler):
        listener = _Listener(local_user_id, handler)
        task = asyncio.create_task(self._poll(room_id, listener))
        self._pollers.add(task)
        task.add_done_callback(self._pollers.discard)
        return task.cancel

    async def _poll(self, room_id: str, listener: _Listener):
        while True:
            try:
                await listener.offer(await self.get(room_id))
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                log.warning("Ring poll for room %s failed: %s", room_id, e)
            await asyncio.sleep(self._poll_interval)

    async def close(self):
        for task in list(self._pollers):
            task.cancel()
        await asyncio.gather(*self._pollers, return_exceptions=True)
        if self._session is not None:
            await self._session.close()
            self._session = None
