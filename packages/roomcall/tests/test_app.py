"""Tests for roomcall.app: HTTP and websocket surface of the relay."""

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from roomcall.app import create_app
from roomcall.config import CallConfig
from roomcall.identity import SharedTokenIdentity


@pytest.fixture
def client():
    with TestClient(create_app(CallConfig())) as c:
        yield c


class TestHttp:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "rooms": 0}

    def test_other_paths_404(self, client):
        assert client.get("/nope").status_code == 404
        assert client.get("/socket/extra").status_code == 404

    def test_unknown_room(self, client):
        assert client.get("/rooms/r1").status_code == 404


class TestSocket:
    def test_join_acknowledged_with_identity(self, client):
        with client.websocket_connect("/socket?uid=alice-01") as ws:
            ws.send_json({"type": "join", "roomId": "r1"})
            assert ws.receive_json() == {"type": "joined", "roomId": "r1", "userId": "alice-01"}

    def test_offer_routed_between_sockets(self, client):
        with client.websocket_connect("/socket") as a, client.websocket_connect("/socket") as b:
            a.send_json({"type": "join", "roomId": "r1", "userId": "alice"})
            a.receive_json()
            b.send_json({"type": "join", "roomId": "r1", "userId": "bob"})
            b.receive_json()

            a.send_json({"type": "offer", "roomId": "r1", "userId": "alice", "sdp": "v=0"})
            msg = b.receive_json()
            assert msg["type"] == "offer"
            assert msg["from"] == "alice"

            members = client.get("/rooms/r1").json()["members"]
            assert sorted(m["userId"] for m in members) == ["alice", "bob"]

    def test_ping(self, client):
        with client.websocket_connect("/socket") as ws:
            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}

    def test_binary_frame_keeps_member_connected(self, client):
        with client.websocket_connect("/socket") as a, client.websocket_connect("/socket") as b:
            a.send_json({"type": "join", "roomId": "r1", "userId": "alice"})
            a.receive_json()
            b.send_json({"type": "join", "roomId": "r1", "userId": "bob"})
            b.receive_json()

            b.send_bytes(b'{"type": "ping"}')
            assert b.receive_json() == {"type": "pong"}
            b.send_bytes(b"\x80\x81")

            b.send_json({"type": "offer", "roomId": "r1", "userId": "bob", "sdp": "v=0"})
            msg = a.receive_json()
            assert (msg["type"], msg["from"]) == ("offer", "bob")
            members = client.get("/rooms/r1").json()["members"]
            assert sorted(m["userId"] for m in members) == ["alice", "bob"]

    def test_unauthorized_socket_closed(self):
        app = create_app(CallConfig(), identity=SharedTokenIdentity("s3cret"))
        with TestClient(app) as client:
            with pytest.raises(WebSocketDisconnect) as exc:
                with client.websocket_connect("/socket"):
                    pass
            assert exc.value.code == 4001

            with client.websocket_connect("/socket?token=s3cret&uid=alice-01") as ws:
                ws.send_json({"type": "join", "roomId": "r1"})
                assert ws.receive_json()["userId"] == "alice-01"

    def test_custom_socket_path(self):
        with TestClient(create_app(CallConfig({"socket_path": "/ws"}))) as client:
            with client.websocket_connect("/ws") as ws:
                ws.send_json({"type": "ping"})
                assert ws.receive_json() == {"type": "pong"}


class TestMailbox:
    def test_mailbox_member_receives_socket_offer(self, client):
        joined = client.post("/mailbox/r1/carol/join").json()
        assert joined["messages"][0]["type"] == "joined"

        with client.websocket_connect("/socket") as ws:
            ws.send_json({"type": "join", "roomId": "r1", "userId": "alice"})
            ws.receive_json()
            ws.send_json({"type": "offer", "roomId": "r1", "sdp": "v=0"})

            messages = client.get("/mailbox/r1/carol", params={"wait": 2}).json()["messages"]
            assert [(m["type"], m["from"]) for m in messages] == [("offer", "alice")]

            resp = client.post("/mailbox/r1/carol/send",
                               json={"type": "answer", "roomId": "r1", "sdp": "v=0"})
            assert resp.json() == {"ok": True}
            msg = ws.receive_json()
            assert (msg["type"], msg["from"]) == ("answer", "carol")

            assert client.post("/mailbox/r1/carol/leave").json() == {"ok": True}
            assert ws.receive_json() == {"type": "peer_left", "roomId": "r1", "userId": "carol"}

    def test_unknown_mailbox(self, client):
        assert client.get("/mailbox/r1/ghost").status_code == 404
        assert client.post("/mailbox/r1/ghost/send", json={"type": "end"}).status_code == 404

    def test_send_rejects_non_object(self, client):
        client.post("/mailbox/r1/carol/join")
        assert client.post("/mailbox/r1/carol/send", json=[1, 2]).status_code == 400

    def test_mailbox_requires_identity(self):
        app = create_app(CallConfig(), identity=SharedTokenIdentity("s3cret"))
        with TestClient(app) as client:
            assert client.post("/mailbox/r1/carol/join").status_code == 401
            assert client.post("/mailbox/r1/carol/join?token=s3cret").status_code == 200


class TestRingEndpoints:
    def test_call_record_lifecycle(self, client):
        assert client.get("/rooms/r1/call").status_code == 404

        resp = client.put("/rooms/r1/call", json={"initiatorId": "alice", "isVideo": True})
        assert resp.status_code == 200
        record = resp.json()
        assert record["status"] == "calling"
        assert record["roomId"] == "r1"
        assert record["isVideo"] is True

        assert client.get("/rooms/r1/call").json()["callId"] == record["callId"]

        cleared = client.delete("/rooms/r1/call").json()
        assert cleared["status"] == "inactive"

    def test_invalid_record(self, client):
        assert client.put("/rooms/r1/call", json={"isVideo": True}).status_code == 400
        assert client.put("/rooms/r1/call",
                          json={"initiatorId": "alice", "status": "ringing"}).status_code == 400

    def test_clear_unknown(self, client):
        assert client.delete("/rooms/r1/call").status_code == 404
