"""릴레이 HTTP/WebSocket 엔드포인트 테스트 (FastAPI TestClient)."""

import pytest
from fastapi.testclient import TestClient

from app import app
from meshcall.config import ice_config
from meshcall.signaling import RoomRegistry, SignalingRelay
from routes import init_signaling_relay


@pytest.fixture
def client():
    init_signaling_relay(SignalingRelay(RoomRegistry()))
    with TestClient(app) as test_client:
        yield test_client


def join_room(ws, room_id: str, name: str) -> dict:
    ws.send_json({"type": "join-room", "data": {"roomId": room_id, "displayName": name}})
    return ws.receive_json()


def test_root_and_health(client):
    assert client.get("/").json()["status"] == "ok"

    health = client.get("/api/health").json()
    assert health == {"status": "ok", "connections": 0, "rooms": 0}


def test_ice_servers_for_browsers(client):
    servers = client.get("/api/ice-servers").json()["iceServers"]
    if ice_config.has_stun_server:
        assert servers == [{"urls": ice_config.STUN_SERVER_URL}]
    else:
        assert servers == []


def test_two_participants_signal_through_relay(client):
    with client.websocket_connect("/ws") as alice:
        welcome = alice.receive_json()
        assert welcome["type"] == "welcome"
        alice_id = welcome["data"]["participantId"]

        assert join_room(alice, "r1", "alice") == {"type": "existing-users", "data": {"participants": []}}

        with client.websocket_connect("/ws") as bob:
            bob_id = bob.receive_json()["data"]["participantId"]
            assert join_room(bob, "r1", "bob") == {"type": "existing-users", "data": {"participants": [alice_id]}}

            joined = alice.receive_json()
            assert joined == {"type": "user-joined", "data": {"participantId": bob_id, "displayName": "bob"}}

            sdp = {"type": "offer", "sdp": "v=0\r\n"}
            bob.send_json({"type": "offer", "data": {"to": alice_id, "sdp": sdp}})
            assert alice.receive_json() == {"type": "offer", "data": {"from": bob_id, "sdp": sdp}}

            rooms = client.get("/api/rooms").json()
            assert rooms["count"] == 1
            assert rooms["rooms"][0]["participant_count"] == 2

            bob.send_json({"type": "chat-message", "data": {"message": "hello"}})
            for ws in (alice, bob):
                chat = ws.receive_json()
                assert chat["type"] == "chat-message"
                assert chat["data"]["displayName"] == "bob"
                assert isinstance(chat["data"]["timestamp"], int)

        # bob의 연결이 끊기면 남은 참가자에게 한 번 알림
        left = alice.receive_json()
        assert left["type"] == "user-left"
        assert left["data"]["participantId"] == bob_id


def test_invalid_json_gets_error_and_connection_survives(client):
    with client.websocket_connect("/ws") as ws:
        ws.receive_json()
        ws.send_text("{not json")
        assert ws.receive_json() == {"type": "error", "data": {"message": "Malformed message envelope"}}

        assert join_room(ws, "r1", "alice")["type"] == "existing-users"
