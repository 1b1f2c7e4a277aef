"""Tests for ClientConnection / ConnectionManager delivery semantics."""

import asyncio
import json

from poolroom import config
from poolroom.ws_manager import REPLACED_CLOSE_CODE, ClientConnection, ConnectionManager


class FakeWebSocket:
    def __init__(self, fail: bool = False) -> None:
        self.accepted = False
        self.sent: list[str] = []
        self.closed: tuple[int, str] | None = None
        self.fail = fail

    async def accept(self) -> None:
        self.accepted = True

    async def send_text(self, text: str) -> None:
        if self.fail:
            raise RuntimeError("socket gone")
        self.sent.append(text)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = (code, reason)


async def _flush() -> None:
    """Let connection writer tasks drain their queues."""
    for _ in range(20):
        await asyncio.sleep(0)


def _frames(ws: FakeWebSocket) -> list[dict]:
    return [json.loads(t) for t in ws.sent]


class TestClientConnection:
    async def test_writes_in_order(self):
        ws = FakeWebSocket()
        conn = ClientConnection(ws)
        conn.start()
        for i in range(5):
            assert conn.send({"type": "n", "i": i})
        await _flush()
        assert [f["i"] for f in _frames(ws)] == [0, 1, 2, 3, 4]
        conn.stop()

    async def test_close_after_pending_frames(self):
        ws = FakeWebSocket()
        conn = ClientConnection(ws)
        conn.start()
        conn.send({"type": "last"})
        conn.close(4001, "bye")
        assert not conn.send({"type": "dropped"})
        await _flush()
        assert [f["type"] for f in _frames(ws)] == ["last"]
        assert ws.closed == (4001, "bye")

    async def test_failed_write_marks_closed(self):
        ws = FakeWebSocket(fail=True)
        conn = ClientConnection(ws)
        conn.start()
        conn.send({"type": "x"})
        await _flush()
        assert conn.closed
        assert not conn.send({"type": "y"})

    def test_full_queue_rejects(self, monkeypatch):
        monkeypatch.setattr(config, "SEND_QUEUE_SIZE", 1)
        conn = ClientConnection(FakeWebSocket())
        assert conn.send("one")
        assert not conn.send("two")
        assert conn.closed

    async def test_stop_refuses_sends(self):
        conn = ClientConnection(FakeWebSocket())
        conn.start()
        conn.stop()
        assert not conn.send("late")


class TestConnectionManager:
    async def test_connect_accepts_and_registers(self):
        mgr = ConnectionManager()
        ws = FakeWebSocket()
        conn = await mgr.connect(ws)
        assert ws.accepted
        assert mgr.connection_count() == 1
        mgr.disconnect(conn)
        assert mgr.connection_count() == 0
        assert conn.closed

    async def test_broadcast_reaches_room_only(self):
        mgr = ConnectionManager()
        a, b, other = FakeWebSocket(), FakeWebSocket(), FakeWebSocket()
        ca, cb, co = await mgr.connect(a), await mgr.connect(b), await mgr.connect(other)
        mgr.attach("1234", "pa", ca)
        mgr.attach("1234", "pb", cb)
        mgr.attach("9999", "po", co)

        mgr.broadcast("1234", {"type": "room_update"})
        await _flush()
        assert _frames(a) == [{"type": "room_update"}]
        assert _frames(b) == [{"type": "room_update"}]
        assert other.sent == []

    async def test_broadcast_exclude(self):
        mgr = ConnectionManager()
        a, b = FakeWebSocket(), FakeWebSocket()
        ca, cb = await mgr.connect(a), await mgr.connect(b)
        mgr.attach("1234", "pa", ca)
        mgr.attach("1234", "pb", cb)
        mgr.broadcast("1234", {"type": "room_update"}, exclude=ca)
        await _flush()
        assert a.sent == []
        assert len(b.sent) == 1

    async def test_attach_replaces_older_connection(self):
        mgr = ConnectionManager()
        old_ws, new_ws = FakeWebSocket(), FakeWebSocket()
        old, new = await mgr.connect(old_ws), await mgr.connect(new_ws)
        mgr.attach("1234", "p1", old)
        replaced = mgr.attach("1234", "p1", new)
        assert replaced is old
        await _flush()
        assert _frames(old_ws)[-1]["type"] == "session_replaced"
        assert old_ws.closed[0] == REPLACED_CLOSE_CODE

        mgr.send_to_player("1234", "p1", {"type": "hello"})
        await _flush()
        assert _frames(new_ws) == [{"type": "hello"}]

    async def test_detach_only_matching(self):
        mgr = ConnectionManager()
        old_ws, new_ws = FakeWebSocket(), FakeWebSocket()
        old, new = await mgr.connect(old_ws), await mgr.connect(new_ws)
        mgr.attach("1234", "p1", old)
        mgr.attach("1234", "p1", new)
        mgr.detach("1234", "p1", old)
        mgr.send_to_player("1234", "p1", {"type": "still_routed"})
        await _flush()
        assert _frames(new_ws) == [{"type": "still_routed"}]

        mgr.detach("1234", "p1", new)
        mgr.send_to_player("1234", "p1", {"type": "dropped"})
        await _flush()
        assert _frames(new_ws) == [{"type": "still_routed"}]
        assert mgr.attach("1234", "p1", await mgr.connect(FakeWebSocket())) is None

    async def test_dead_connection_detached_on_broadcast(self, monkeypatch):
        monkeypatch.setattr(config, "SEND_QUEUE_SIZE", 1)
        mgr = ConnectionManager()
        conn = ClientConnection(FakeWebSocket())
        mgr.register(conn)
        mgr.attach("1234", "p1", conn)
        mgr.broadcast("1234", "one")
        mgr.broadcast("1234", "two")
        assert conn.closed
        assert mgr.attach("1234", "p1", ClientConnection(FakeWebSocket())) is None
