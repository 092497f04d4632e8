"""ICE server configuration for call sessions.

A session resolves its servers when it builds its peer connection, so a
provider is asked once per call. StaticIceServers returns a fixed list
(public STUN plus an open TURN relay by default). TwilioIceServers fetches
ephemeral TURN credentials from Twilio's Network Traversal Service and
reuses them until shortly before they expire.
"""

import asyncio
import logging
import os
import time
from abc import ABC, abstractmethod

import aiohttp
from aiortc import RTCConfiguration, RTCIceServer

log = logging.getLogger("roomcall.ice")

DEFAULT_ICE_SERVERS = [
    {"urls": "stun:stun.l.google.com:19302"},
    {"urls": "stun:stun1.l.google.com:19302"},
    {"urls": "stun:stun2.l.google.com:19302"},
    {
        "urls": [
            "turn:openrelay.metered.ca:80",
            "turn:openrelay.metered.ca:443",
            "turn:openrelay.metered.ca:443?transport=tcp",
        ],
        "username": "openrelayproject",
        "credential": "openrelayproject",
    },
]

TWILIO_TOKENS_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Tokens.json"


def _rtc_server(entry: dict) -> RTCIceServer | None:
    # Twilio still sends the legacy singular "url" next to "urls".
    urls = entry.get("urls") or entry.get("url")
    if not urls:
        log.warning("Skipping ICE server entry without urls: %r", entry)
        return None
    return RTCIceServer(
        urls=[urls] if isinstance(urls, str) else list(urls),
        username=entry.get("username"),
        credential=entry.get("credential"),
    )


def rtc_configuration(servers: list[dict] | None) -> RTCConfiguration:
    """aiortc configuration for `servers`; aiortc's defaults when none are usable."""
    rtc_servers = [s for s in map(_rtc_server, servers or []) if s is not None]
    return RTCConfiguration(iceServers=rtc_servers) if rtc_servers else RTCConfiguration()


class IceServerProvider(ABC):
    """Source of STUN/TURN servers for new peer connections."""

    @abstractmethod
    async def fetch_ice_servers(self) -> list[dict]:
        ...


async def resolve_ice_servers(source) -> list[dict]:
    """Servers from a provider, a fixed list, or nothing."""
    if source is None:
        return []
    if isinstance(source, IceServerProvider):
        return await source.fetch_ice_servers()
    return list(source)


class StaticIceServers(IceServerProvider):
    def __init__(self, servers: list[dict] | None = None):
        self._servers = list(DEFAULT_ICE_SERVERS if servers is None else servers)

    async def fetch_ice_servers(self) -> list[dict]:
        return list(self._servers)


class TwilioIceServers(IceServerProvider):
    """Ephemeral TURN credentials from Twilio NTS.

    Credentials are cached for their TTL minus `refresh_margin` seconds.
    Without account credentials, or when Twilio cannot be reached, the
    `fallback` provider answers instead (public servers by default) and
    nothing is cached.
    """

    def __init__(
        self,
        account_sid: str = "",
        auth_token: str = "",
        fallback: IceServerProvider | None = None,
        refresh_margin: float = 60.0,
    ):
        self._account_sid = account_sid or os.getenv("TWILIO_ACCOUNT_SID", "")
        self._auth_token = auth_token or os.getenv("TWILIO_AUTH_TOKEN", "")
        self._fallback = fallback or StaticIceServers()
        self._refresh_margin = refresh_margin
        self._cached: list[dict] | None = None
        self._expires_at = 0.0

    @property
    def configured(self) -> bool:
        return bool(self._account_sid and self._auth_token)

    async def fetch_ice_servers(self) -> list[dict]:
        if self._cached is not None and time.monotonic() < self._expires_at:
            return list(self._cached)
        if not self.configured:
            log.warning("Twilio credentials not set, using fallback ICE servers")
            return await self._fallback.fetch_ice_servers()

        token = await self._request_token()
        servers = (token or {}).get("ice_servers")
        if not servers:
            return await self._fallback.fetch_ice_servers()

        try:
            ttl = float(token.get("ttl", 0))
        except (TypeError, ValueError):
            ttl = 0.0
        self._cached = servers
        self._expires_at = time.monotonic() + max(ttl - self._refresh_margin, 0.0)
        log.info("Got %d ICE servers from Twilio (TTL %ss)", len(servers), token.get("ttl", "?"))
        return list(servers)

    async def _request_token(self) -> dict | None:
        url = TWILIO_TOKENS_URL.format(sid=self._account_sid)
        auth = aiohttp.BasicAuth(self._account_sid, self._auth_token)
        timeout = aiohttp.ClientTimeout(total=10)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(url, auth=auth) as resp:
                    if resp.status != 201:
                        log.error("Twilio token request returned %d: %s",
                                  resp.status, await resp.text())
                        return None
                    return await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log.error("Twilio token request failed: %s", e)
            return None
