"""Interfaces the chat layer around the call core relies on.

Message history and file uploads live outside the call core; these are the
contracts, plus in-memory versions for development and tests.
"""

import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

log = logging.getLogger("roomcall.collaborators")


def classify_content_type(content_type: str | None) -> str:
    """Map a MIME type to the chat's media kind: image, video, audio or file."""
    content_type = (content_type or "").lower()
    for kind in ("image", "video", "audio"):
        if content_type.startswith(kind):
            return kind
    return "file"


@dataclass
class ChatMessage:
    room_id: str
    user_id: str
    username: str
    text: str = ""
    media_url: str | None = None
    media_type: str | None = None
    message_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: float = field(default_factory=time.time)


class MessageStore(ABC):
    @abstractmethod
    async def append(self, message: ChatMessage) -> ChatMessage:
        ...

    @abstractmethod
    async def history(self, room_id: str) -> list[ChatMessage]:
        """Messages of a room, oldest first."""
        ...

    @abstractmethod
    def subscribe(self, room_id: str, callback):
        """Call `callback(messages)` with the full ordered history on every change.

        Returns an unsubscribe function.
        """
        ...


class InMemoryMessageStore(MessageStore):
    def __init__(self):
        self._rooms: dict[str, list[ChatMessage]] = {}
        self._subscribers: dict[str, list] = {}

    async def append(self, message: ChatMessage) -> ChatMessage:
        messages = self._rooms.setdefault(message.room_id, [])
        messages.append(message)
        messages.sort(key=lambda m: m.timestamp)
        for callback in list(self._subscribers.get(message.room_id, ())):
            await self._deliver(callback, list(messages))
        return message

    async def history(self, room_id: str) -> list[ChatMessage]:
        return list(self._rooms.get(room_id, ()))

    def subscribe(self, room_id: str, callback):
        self._subscribers.setdefault(room_id, []).append(callback)

        def unsubscribe():
            callbacks = self._subscribers.get(room_id, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    @staticmethod
    async def _deliver(callback, messages):
        try:
            result = callback(messages)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            log.error("Message subscriber failed: %s", e)


@dataclass
class StoredBlob:
    url: str
    media_type: str
    size: int


class BlobStore(ABC):
    @abstractmethod
    async def put(self, room_id: str, filename: str, data: bytes,
                  content_type: str | None = None) -> StoredBlob:
        """Store bytes and return where they can be fetched from."""
        ...


class InMemoryBlobStore(BlobStore):
    def __init__(self, base_url: str = "memory://"):
        self.base_url = base_url
        self.blobs: dict[str, bytes] = {}

    async def put(self, room_id: str, filename: str, data: bytes,
                  content_type: str | None = None) -> StoredBlob:
        key = f"rooms/{room_id}/{int(time.time() * 1000)}_{filename}"
        self.blobs[key] = data
        return StoredBlob(url=self.base_url + key,
                          media_type=classify_content_type(content_type),
                          size=len(data))
