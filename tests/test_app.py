"""HTTP and WebSocket tests against the FastAPI application."""

from fastapi.testclient import TestClient


def join(websocket, room_key: str) -> dict:
    websocket.send_json({"type": "join-room", "roomKey": room_key})
    return websocket.receive_json()


def test_health(client: TestClient) -> None:
    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "rooms": 0}


def test_create_room_returns_fresh_key(client: TestClient) -> None:
    """Test that a key is issued without creating the room."""
    response = client.post("/rooms/")

    assert response.status_code == 200
    body = response.json()
    assert len(body["roomKey"]) == 8
    assert body["roomKey"] == body["roomKey"].upper()
    assert body["wsUrl"] == "ws://testserver/ws"
    assert client.get(f"/rooms/{body['roomKey']}").status_code == 404


def test_room_details_not_found(client: TestClient) -> None:
    response = client.get("/rooms/NOPE")

    assert response.status_code == 404
    assert response.json()["detail"] == "Room not found"


def test_websocket_pairing_flow(client: TestClient) -> None:
    """Test two participants meeting in a room and exchanging offer/answer."""
    with client.websocket_connect("/ws") as ws_a:
        a = ws_a.receive_json()["connectionId"]
        assert join(ws_a, "abc123") == {"type": "joined-room", "roomKey": "ABC123"}

        with client.websocket_connect("/ws") as ws_b:
            b = ws_b.receive_json()["connectionId"]
            assert a != b

            assert join(ws_b, "ABC123") == {"type": "joined-room", "roomKey": "ABC123"}
            assert ws_a.receive_json() == {"type": "user-connected", "peerId": b}

            details = client.get("/rooms/abc123").json()
            assert details == {"roomKey": "ABC123", "capacity": 2, "membersCount": 2, "isFull": True}
            assert client.get("/healthz").json()["rooms"] == 1

            offer = {"type": "offer", "sdp": "v=0"}
            ws_a.send_json({"type": "offer", "offer": offer, "to": b})
            assert ws_b.receive_json() == {"type": "offer", "offer": offer, "from": a}

            answer = {"type": "answer", "sdp": "v=0"}
            ws_b.send_json({"type": "answer", "answer": answer, "to": a})
            assert ws_a.receive_json() == {"type": "answer", "answer": answer, "from": b}

            candidate = {"candidate": "candidate:1 1 udp 1 127.0.0.1 9 typ host", "sdpMid": "0", "sdpMLineIndex": 0}
            ws_b.send_json({"type": "ice-candidate", "candidate": candidate, "to": a})
            assert ws_a.receive_json() == {"type": "ice-candidate", "candidate": candidate, "from": b}

        assert ws_a.receive_json() == {"type": "user-disconnected", "peerId": b}
        assert client.get("/rooms/ABC123").json()["membersCount"] == 1


def test_websocket_third_participant_is_refused(client: TestClient) -> None:
    with (
        client.websocket_connect("/ws") as ws_c,
        client.websocket_connect("/ws") as ws_d,
        client.websocket_connect("/ws") as ws_e,
    ):
        for websocket in (ws_c, ws_d, ws_e):
            websocket.receive_json()

        join(ws_c, "FULL1")
        join(ws_d, "FULL1")
        assert join(ws_e, "FULL1") == {"type": "room-full", "roomKey": "FULL1"}
        assert client.get("/rooms/FULL1").json()["membersCount"] == 2


def test_websocket_malformed_frame_keeps_socket_open(client: TestClient) -> None:
    with client.websocket_connect("/ws") as websocket:
        websocket.receive_json()

        websocket.send_text("definitely not json")
        error = websocket.receive_json()
        assert error["type"] == "error"
        assert error["code"] == "invalid-message"

        assert join(websocket, "STILL-OK") == {"type": "joined-room", "roomKey": "STILL-OK"}


def test_websocket_explicit_leave(client: TestClient) -> None:
    with client.websocket_connect("/ws") as ws_a, client.websocket_connect("/ws") as ws_b:
        ws_a.receive_json()
        b = ws_b.receive_json()["connectionId"]
        join(ws_a, "LEAVE1")
        join(ws_b, "LEAVE1")
        ws_a.receive_json()

        ws_b.send_json({"type": "leave-room"})

        assert ws_a.receive_json() == {"type": "user-disconnected", "peerId": b}
