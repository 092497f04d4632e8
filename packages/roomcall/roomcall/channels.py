"""Client-side signaling transports.

WebSocketChannel holds a persistent connection to the relay's socket path.
MailboxChannel is the store-and-forward alternative: it posts envelopes
over HTTP and long-polls a per-user mailbox on the relay. Both expose the
same SignalingChannel contract so the selector can swap them freely.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from urllib.parse import quote

import aiohttp

from roomcall.envelope import SignalType, decode
from roomcall.errors import MalformedEnvelope, SignalingUnavailable

log = logging.getLogger("roomcall.channels")


class SignalingChannel(ABC):
    """One way of exchanging envelopes with the relay."""

    name = "channel"

    def __init__(self):
        self._on_message = None
        self._on_closed = None

    def set_listener(self, on_message, on_closed):
        """on_message(channel, msg) and on_closed(channel) are coroutines."""
        self._on_message = on_message
        self._on_closed = on_closed

    @property
    @abstractmethod
    def connected(self) -> bool:
        ...

    @abstractmethod
    async def open(self) -> None:
        """Establish the transport. Raises on refusal or timeout."""
        ...

    @abstractmethod
    async def join(self, room_id: str, user_id: str) -> None:
        ...

    @abstractmethod
    async def send(self, message: dict) -> None:
        """Raises SignalingUnavailable if the transport cannot send."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Intentional close; never reported as a lost connection."""
        ...

    async def _deliver(self, msg: dict):
        if self._on_message is not None:
            await self._on_message(self, msg)

    async def _lost(self):
        if self._on_closed is not None:
            await self._on_closed(self)


class WebSocketChannel(SignalingChannel):
    name = "websocket"

    def __init__(self, url: str, join_timeout: float = 5.0, heartbeat: float = 20.0):
        super().__init__()
        self.url = url
        self._join_timeout = join_timeout
        self._heartbeat = heartbeat
        self._session: aiohttp.ClientSession | None = None
        self._ws = None
        self._reader: asyncio.Task | None = None
        self._joined = asyncio.Event()
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def open(self):
        self._closing = False
        self._session = aiohttp.ClientSession()
        try:
            self._ws = await self._session.ws_connect(self.url, heartbeat=self._heartbeat)
        except BaseException:
            await self._session.close()
            self._session = None
            raise
        log.info("WebSocket connection established to %s", self.url)
        self._reader = asyncio.create_task(self._read_loop(self._ws))

    async def _read_loop(self, ws):
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        data = decode(msg.data)
                    except MalformedEnvelope as e:
                        log.warning("Dropping malformed message from relay: %s", e.detail)
                        continue
                    if data.get("type") == SignalType.JOINED.value:
                        self._joined.set()
                    await self._deliver(data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    log.warning("WebSocket error: %s", ws.exception())
                    break
        finally:
            if not self._closing:
                log.warning("WebSocket connection closed (code %s)", ws.close_code)
                await self._lost()

    async def join(self, room_id: str, user_id: str):
        self._joined.clear()
        await self.send({"type": SignalType.JOIN.value, "roomId": room_id, "userId": user_id})
        try:
            await asyncio.wait_for(self._joined.wait(), self._join_timeout)
        except asyncio.TimeoutError:
            raise SignalingUnavailable("Relay did not acknowledge join") from None

    async def send(self, message: dict):
        if not self.connected:
            raise SignalingUnavailable("Cannot send message, WebSocket not connected")
        try:
            await self._ws.send_json(message)
        except (ConnectionResetError, RuntimeError) as e:
            raise SignalingUnavailable(f"WebSocket send failed: {e}") from e

    async def close(self):
        self._closing = True
        if self._ws is not None:
            await self._ws.close()
        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
        if self._session is not None:
            await self._session.close()
        self._ws = self._session = None


class MailboxChannel(SignalingChannel):
    name = "mailbox"

    def __init__(self, base_url: str, poll_wait: float = 20.0,
                 poll_interval: float = 1.0, max_poll_failures: int = 3):
        super().__init__()
        self.base_url = base_url.rstrip("/")
        self._poll_wait = poll_wait
        self._poll_interval = poll_interval
        self._max_poll_failures = max_poll_failures
        self._session: aiohttp.ClientSession | None = None
        self._poller: asyncio.Task | None = None
        self._mailbox: str | None = None
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._session is not None and not self._session.closed

    async def open(self):
        self._closing = False
        self._session = aiohttp.ClientSession()
        try:
            async with self._session.get(f"{self.base_url}/health") as resp:
                resp.raise_for_status()
        except BaseException:
            await self._session.close()
            self._session = None
            raise
        log.info("Mailbox relay reachable at %s", self.base_url)

    async def join(self, room_id: str, user_id: str):
        if not self.connected:
            raise SignalingUnavailable("Mailbox channel not open")
        self._mailbox = f"{self.base_url}/mailbox/{quote(room_id, safe='')}/{quote(user_id, safe='')}"
        data = await self._post("join", None)
        for msg in data.get("messages", []):
            await self._deliver(msg)
        if self._poller is None:
            self._poller = asyncio.create_task(self._poll_loop())

    async def send(self, message: dict):
        if self._mailbox is None:
            raise SignalingUnavailable("Cannot send message, mailbox not joined")
        await self._post("send", message)

    async def _post(self, action: str, body: dict | None) -> dict:
        if not self.connected:
            raise SignalingUnavailable("Mailbox channel not open")
        try:
            async with self._session.post(f"{self._mailbox}/{action}", json=body) as resp:
                resp.raise_for_status()
                return await resp.json()
        except aiohttp.ClientError as e:
            raise SignalingUnavailable(f"Mailbox {action} failed: {e}") from e

    async def _poll_loop(self):
        failures = 0
        timeout = aiohttp.ClientTimeout(total=self._poll_wait + 10)
        try:
            while not self._closing:
                try:
                    async with self._session.get(
                        self._mailbox, params={"wait": str(self._poll_wait)}, timeout=timeout,
                    ) as resp:
                        if resp.status == 404:
                            log.warning("Mailbox expired on relay")
                            break
                        resp.raise_for_status()
                        data = await resp.json()
                except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                    failures += 1
                    log.warning("Mailbox poll failed (%d/%d): %s",
                                failures, self._max_poll_failures, e)
                    if failures >= self._max_poll_failures:
                        break
                    await asyncio.sleep(self._poll_interval)
                    continue

                failures = 0
                for msg in data.get("messages", []):
                    await self._deliver(msg)
        finally:
            if not self._closing:
                await self._lost()

    async def close(self):
        self._closing = True
        poller, self._poller = self._poller, None
        if poller is not None and poller is not asyncio.current_task():
            poller.cancel()
            await asyncio.gather(poller, return_exceptions=True)
        if self._mailbox is not None and self.connected:
            try:
                async with self._session.post(f"{self._mailbox}/leave") as resp:
                    await resp.read()
            except aiohttp.ClientError as e:
                log.debug("Mailbox leave failed: %s", e)
        if self._session is not None:
            await self._session.close()
        self._session = None
        self._mailbox = None
