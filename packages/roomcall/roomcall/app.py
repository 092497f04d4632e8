"""FastAPI application serving the signaling relay.

Endpoints::

    WS   /socket                               persistent signaling (path configurable)
    GET  /health
    POST /mailbox/{room_id}/{user_id}/join     store-and-forward signaling
    POST /mailbox/{room_id}/{user_id}/send
    GET  /mailbox/{room_id}/{user_id}?wait=20
    POST /mailbox/{room_id}/{user_id}/leave
    GET  /rooms/{room_id}                      membership and current call
    PUT|GET|DELETE /rooms/{room_id}/call       ring record

Run: uvicorn roomcall.app:app --port 3001
"""

import asyncio
import contextlib
import logging

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, WebSocket

from roomcall.config import CallConfig
from roomcall.identity import AnonymousIdentity, IdentityProvider
from roomcall.mailbox import MailboxHub
from roomcall.registry import RoomRegistry
from roomcall.relay import SignalRelay
from roomcall.ring import CallMetadata, RingChannel

log = logging.getLogger("roomcall.app")

MAX_POLL_WAIT = 60.0


def create_relay_router(
    *,
    relay: SignalRelay,
    mailbox: MailboxHub,
    ring: RingChannel,
    identity: IdentityProvider,
    config: CallConfig,
) -> APIRouter:
    """Create an APIRouter with the relay's websocket and HTTP endpoints.

    Returns:
        An APIRouter to mount with ``app.include_router()``.
    """
    router = APIRouter()

    async def require_identity(request: Request):
        result = await identity.authenticate(request)
        if not result.authenticated:
            raise HTTPException(status_code=401, detail="Unauthorized")
        return result

    http_deps = [Depends(require_identity)]

    @router.websocket(config["socket_path"])
    async def socket_endpoint(websocket: WebSocket):
        user = await identity.authenticate_ws(websocket)
        if not user.authenticated:
            await websocket.close(code=4001, reason="Unauthorized")
            return
        await relay.handle(websocket, user_id=user.user_id)

    @router.get("/health")
    async def health():
        return {"status": "ok", "rooms": len(relay.registry)}

    @router.post("/mailbox/{room_id}/{user_id}/join", dependencies=http_deps)
    async def mailbox_join(room_id: str, user_id: str):
        """Join the room through a mailbox. Returns the messages queued so far."""
        return {"messages": await mailbox.join(room_id, user_id)}

    @router.post("/mailbox/{room_id}/{user_id}/send", dependencies=http_deps)
    async def mailbox_send(room_id: str, user_id: str, request: Request):
        try:
            body = await request.json()
        except ValueError:
            raise HTTPException(status_code=400, detail="Body must be JSON")
        if not isinstance(body, dict):
            raise HTTPException(status_code=400, detail="Envelope must be a JSON object")
        if not await mailbox.send(room_id, user_id, body):
            raise HTTPException(status_code=404, detail="Mailbox not found")
        return {"ok": True}

    @router.get("/mailbox/{room_id}/{user_id}", dependencies=http_deps)
    async def mailbox_poll(room_id: str, user_id: str, wait: float = 0.0):
        """Long-poll: waits up to `wait` seconds for at least one message."""
        wait = min(max(wait, 0.0), MAX_POLL_WAIT)
        messages = await mailbox.poll(room_id, user_id, wait)
        if messages is None:
            raise HTTPException(status_code=404, detail="Mailbox not found")
        return {"messages": messages}

    @router.post("/mailbox/{room_id}/{user_id}/leave", dependencies=http_deps)
    async def mailbox_leave(room_id: str, user_id: str):
        return {"ok": await mailbox.leave(room_id, user_id)}

    @router.get("/rooms/{room_id}")
    async def room_info(room_id: str):
        members = relay.registry.snapshot(room_id)
        if members is None:
            raise HTTPException(status_code=404, detail=f"Unknown room: {room_id!r}")
        record = await ring.get(room_id)
        return {
            "roomId": room_id,
            "members": members,
            "call": record.to_dict() if record else None,
        }

    @router.get("/rooms/{room_id}/call")
    async def get_call(room_id: str):
        record = await ring.get(room_id)
        if record is None:
            raise HTTPException(status_code=404, detail="No call record")
        return record.to_dict()

    @router.put("/rooms/{room_id}/call", dependencies=http_deps)
    async def put_call(room_id: str, request: Request):
        """Publish the room's current call record (last writer wins)."""
        try:
            body = await request.json()
        except ValueError:
            raise HTTPException(status_code=400, detail="Body must be JSON")
        if not isinstance(body, dict):
            raise HTTPException(status_code=400, detail="Call record must be a JSON object")
        try:
            record = CallMetadata.from_dict(body, room_id)
        except (KeyError, TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=f"Invalid call record: {exc}")
        return (await ring.publish(record)).to_dict()

    @router.delete("/rooms/{room_id}/call", dependencies=http_deps)
    async def clear_call(room_id: str):
        record = await ring.clear(room_id)
        if record is None:
            raise HTTPException(status_code=404, detail="No call record")
        return record.to_dict()

    return router


def create_app(config: CallConfig | None = None,
               identity: IdentityProvider | None = None) -> FastAPI:
    config = config or CallConfig.from_env()
    identity = identity or AnonymousIdentity()
    relay = SignalRelay(RoomRegistry())
    mailbox = MailboxHub(relay, lease=config["mailbox_lease"])
    ring = RingChannel()

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        reaper = asyncio.create_task(mailbox.run_reaper())
        log.info("Relay ready (socket %s)", config["socket_path"])
        try:
            yield
        finally:
            reaper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reaper

    app = FastAPI(lifespan=lifespan)
    app.state.relay = relay
    app.state.mailbox = mailbox
    app.state.ring = ring
    app.include_router(create_relay_router(
        relay=relay, mailbox=mailbox, ring=ring, identity=identity, config=config,
    ))
    return app


app = create_app()
