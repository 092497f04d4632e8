"""Anonymous identity for relay clients.

Chat rooms have no accounts: every client gets a stable opaque user id,
reused across reconnects when the client presents the one it was issued.
"""

from __future__ import annotations

import hmac
import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

_UID_RE = re.compile(r"^[A-Za-z0-9_-]{6,64}$")


@dataclass
class Identity:
    """Result of an identity check."""
    authenticated: bool
    user_id: Optional[str] = None
    anonymous: bool = True
    provider: str = ""


def issue_user_id() -> str:
    return uuid.uuid4().hex


class IdentityProvider(ABC):
    @abstractmethod
    async def authenticate(self, request) -> Identity:
        """Identify an HTTP request."""
        ...

    async def authenticate_ws(self, websocket) -> Identity:
        """Identify a WebSocket. Default: delegates to authenticate."""
        return await self.authenticate(websocket)


class AnonymousIdentity(IdentityProvider):
    """Everyone is welcome. Reuses a well-formed `uid` query parameter."""

    async def authenticate(self, request) -> Identity:
        uid = getattr(request, "query_params", {}).get("uid", "")
        if not _UID_RE.match(uid):
            uid = issue_user_id()
        return Identity(authenticated=True, user_id=uid, provider="anonymous")


class SharedTokenIdentity(AnonymousIdentity):
    """Anonymous ids, but only for clients presenting the shared `token`."""

    def __init__(self, token: str):
        self._token = token

    async def authenticate(self, request) -> Identity:
        token = getattr(request, "query_params", {}).get("token", "")
        if not hmac.compare_digest(token, self._token):
            return Identity(authenticated=False, provider="token")
        identity = await super().authenticate(request)
        identity.provider = "token"
        return identity
