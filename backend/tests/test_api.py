"""Tests for the FastAPI app: REST endpoints and the WebSocket action protocol."""

from __future__ import annotations

import os

# Disable rate limiting before importing the app module
os.environ.setdefault("RATE_LIMIT_ENABLED", "0")

import pytest
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from poolroom import main
from poolroom.main import app as fastapi_app


@pytest.fixture(autouse=True)
def _reset_state():
    main.limiter.enabled = False
    main.registry.clear()
    yield
    main.registry.clear()


@pytest.fixture
def client():
    """Shared client so every socket in a test runs on one event loop."""
    with TestClient(fastapi_app) as c:
        yield c


def recv_until(ws, msg_type, max_messages=20):
    """Receive WS messages until we get the expected type."""
    for _ in range(max_messages):
        data = ws.receive_json()
        if data.get("type") == msg_type:
            return data
    raise AssertionError(f"Never received {msg_type} after {max_messages} messages")


# ---------------------------------------------------------------------------
# REST
# ---------------------------------------------------------------------------


class TestRestEndpoints:
    async def test_health(self):
        async with AsyncClient(
            transport=ASGITransport(app=fastapi_app), base_url="http://test"
        ) as client:
            resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    async def test_get_room(self):
        room, _ = main.registry.create_room("Alice", 500)
        async with AsyncClient(
            transport=ASGITransport(app=fastapi_app), base_url="http://test"
        ) as client:
            resp = await client.get(f"/api/rooms/{room.code}")
        assert resp.status_code == 200
        body = resp.json()
        assert body["code"] == room.code
        assert body["starting_balance"] == 500
        assert body["players"][0]["name"] == "Alice"
        assert body["players"][0]["is_owner"] is True

    async def test_get_room_not_found(self):
        async with AsyncClient(
            transport=ASGITransport(app=fastapi_app), base_url="http://test"
        ) as client:
            resp = await client.get("/api/rooms/0000")
        assert resp.status_code == 404
        assert resp.json()["detail"] == "Room not found"

    async def test_list_rooms(self):
        room, _ = main.registry.create_room("Alice", 500)
        room.join("Bob")
        async with AsyncClient(
            transport=ASGITransport(app=fastapi_app), base_url="http://test"
        ) as client:
            resp = await client.get("/api/rooms")
        assert resp.status_code == 200
        assert resp.json() == [
            {"code": room.code, "player_count": 2, "connected_count": 0, "round": 1, "pool": 0}
        ]


# ---------------------------------------------------------------------------
# WebSocket
# ---------------------------------------------------------------------------


class TestWebSocketProtocol:
    def test_create_join_and_bid(self, client):
        with client.websocket_connect("/ws") as alice:
            alice.send_json({"type": "create_room", "creator_name": "Alice", "starting_balance": 500})
            created = recv_until(alice, "room_created")
            code = created["room_code"]
            assert created["player"]["balance"] == 500

            with client.websocket_connect("/ws") as bob:
                bob.send_json({"type": "join_room", "player_name": "Bob", "room_code": code})
                joined = recv_until(bob, "room_joined")
                assert joined["player"]["name"] == "Bob"
                update = recv_until(alice, "room_update")
                assert len(update["room"]["players"]) == 2

                alice.send_json({"type": "place_bid", "amount": 100})
                bid = recv_until(bob, "bid_placed")
                assert bid["player"] == "Alice"
                assert bid["amount"] == 100
                snapshot = recv_until(bob, "room_update")
                assert snapshot["room"]["pool"] == 100
                assert snapshot["room"]["current_player_id"] == joined["player"]["id"]

    def test_errors_are_directed(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "pack_cards"})
            err = recv_until(ws, "error")
            assert err["code"] == "NotInRoom"
            assert err["action"] == "pack_cards"

            ws.send_json({"type": "join_room", "player_name": "Bob", "room_code": "12"})
            err = recv_until(ws, "error")
            assert err["code"] == "InvalidInput"

            ws.send_json({"type": "join_room", "player_name": "Bob", "room_code": "0000"})
            err = recv_until(ws, "error")
            assert err["code"] == "RoomNotFound"

            ws.send_text("not json")
            err = recv_until(ws, "error")
            assert err["code"] == "InvalidInput"

            ws.send_json({"type": "fly_away"})
            err = recv_until(ws, "error")
            assert err["code"] == "InvalidInput"

            ws.send_json({"type": []})
            err = recv_until(ws, "error")
            assert err["code"] == "InvalidInput"
            assert err["action"] == ""

            ws.send_text("[" * 100_000)
            err = recv_until(ws, "error")
            assert err["code"] == "InvalidInput"

            ws.send_bytes(b"\xff\xfe")
            err = recv_until(ws, "error")
            assert err["code"] == "InvalidInput"

            ws.send_json({"type": "ping"})
            assert recv_until(ws, "pong") == {"type": "pong"}

    def test_non_finite_balance_falls_back_to_default(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_text('{"type": "create_room", "creator_name": "Alice", "starting_balance": Infinity}')
            created = recv_until(ws, "room_created")
            assert created["player"]["balance"] == 1000

    def test_bad_bid_keeps_socket_open(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "create_room", "creator_name": "Alice"})
            recv_until(ws, "room_created")

            for amount in ["\u00b2", "9" * 5000]:
                ws.send_json({"type": "place_bid", "amount": amount})
                err = recv_until(ws, "error")
                assert err["code"] == "InvalidAmount"
                assert err["action"] == "place_bid"

            ws.send_json({"type": "place_bid", "amount": 10})
            bid = recv_until(ws, "bid_placed")
            assert bid["amount"] == 10

    def test_ping(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}

    def test_rejoin_after_socket_drop(self, client):
        with client.websocket_connect("/ws") as alice:
            alice.send_json({"type": "create_room", "creator_name": "Alice"})
            created = recv_until(alice, "room_created")
            code = created["room_code"]

            with client.websocket_connect("/ws") as bob:
                bob.send_json({"type": "join_room", "player_name": "Bob", "room_code": code})
                bob_id = recv_until(bob, "room_joined")["player"]["id"]

            # Bob's socket is gone; he keeps his seat during the grace period
            away = recv_until(alice, "room_update")
            while any(p["connected"] for p in away["room"]["players"] if p["id"] == bob_id):
                away = recv_until(alice, "room_update")
            assert len(away["room"]["players"]) == 2

            with client.websocket_connect("/ws") as bob_again:
                bob_again.send_json(
                    {"type": "rejoin_room", "room_code": code, "player_id": bob_id, "player_name": "Bob"}
                )
                rejoined = recv_until(bob_again, "room_rejoined")
                assert rejoined["success"] is True
                assert rejoined["player"]["id"] == bob_id

    def test_rejoin_unknown_player(self, client):
        with client.websocket_connect("/ws") as alice:
            alice.send_json({"type": "create_room", "creator_name": "Alice"})
            code = recv_until(alice, "room_created")["room_code"]
            alice.send_json(
                {"type": "rejoin_room", "room_code": code, "player_id": "ghost", "player_name": "Alice"}
            )
            err = recv_until(alice, "error")
            assert err["code"] == "InvalidInput"

        with client.websocket_connect("/ws") as ws:
            ws.send_json(
                {"type": "rejoin_room", "room_code": code, "player_id": "ghost", "player_name": "Ghost"}
            )
            err = recv_until(ws, "error")
            assert err["code"] == "RejoinFailed"
            assert err["action"] == "rejoin_room"

            ws.send_json({"type": "rejoin_room", "player_name": "Ghost"})
            err = recv_until(ws, "error")
            assert err["code"] == "RejoinFailed"
            assert err["message"] == "Invalid rejoin data"

    def test_leave_room(self, client):
        with client.websocket_connect("/ws") as alice:
            alice.send_json({"type": "create_room", "creator_name": "Alice"})
            code = recv_until(alice, "room_created")["room_code"]
            alice.send_json({"type": "leave_room"})
            left = recv_until(alice, "left_room")
            assert left["room_code"] == code
        assert code not in main.registry
