"""Signaling relay for room calls, with optional shared-token access.

Run:  uvicorn server:app --port 3001
Env:  ROOMCALL_SOCKET_PATH=/socket  ROOMCALL_MAILBOX_LEASE=60
      RELAY_TOKEN=...  (require ?token= on every client)
"""

import logging
import os

logging.basicConfig(level=logging.INFO)

from roomcall.app import create_app
from roomcall.config import CallConfig
from roomcall.identity import AnonymousIdentity, SharedTokenIdentity

token = os.getenv("RELAY_TOKEN", "")
identity = SharedTokenIdentity(token) if token else AnonymousIdentity()

app = create_app(CallConfig.from_env(), identity=identity)
