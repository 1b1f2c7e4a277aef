"""WebSocket connection manager: per-room fan-out with non-blocking sends."""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, NamedTuple, Optional, Union

from fastapi import WebSocket

from poolroom import config

logger = logging.getLogger(__name__)

# Close code sent to a connection superseded by a newer one for the same player
REPLACED_CLOSE_CODE = 4001


class _Close(NamedTuple):
    code: int
    reason: str


def encode(message: Union[str, dict[str, Any]]) -> str:
    if isinstance(message, str):
        return message
    return json.dumps(message, ensure_ascii=False)


class ClientConnection:
    """Wraps a single WebSocket with an outbound queue.

    ``send`` only enqueues; a writer task owned by the connection performs
    the actual socket writes in order.
    """

    def __init__(self, ws: Optional[WebSocket], connection_id: Optional[str] = None) -> None:
        self.ws = ws
        self.connection_id = connection_id or uuid.uuid4().hex
        self.closed = False
        self._queue: asyncio.Queue[Union[str, _Close]] = asyncio.Queue(
            maxsize=config.SEND_QUEUE_SIZE
        )
        self._writer: asyncio.Task | None = None

    def start(self) -> None:
        if self._writer is None or self._writer.done():
            self._writer = asyncio.create_task(self._drain())

    def stop(self) -> None:
        self.closed = True
        if self._writer and not self._writer.done():
            self._writer.cancel()

    def send(self, message: Union[str, dict[str, Any]]) -> bool:
        """Queue a frame, returning False if the connection cannot take it."""
        if self.closed:
            return False
        try:
            self._queue.put_nowait(encode(message))
        except asyncio.QueueFull:
            logger.debug("Send queue full for connection %s", self.connection_id)
            self.closed = True
            return False
        return True

    def close(self, code: int = 1000, reason: str = "") -> None:
        """Close after everything already queued has been written."""
        if self.closed:
            return
        try:
            self._queue.put_nowait(_Close(code, reason))
        except asyncio.QueueFull:
            self.stop()
            return
        self.closed = True

    async def _drain(self) -> None:
        try:
            while True:
                item = await self._queue.get()
                if isinstance(item, _Close):
                    await self.ws.close(code=item.code, reason=item.reason)
                    return
                await self.ws.send_text(item)
        except asyncio.CancelledError:
            pass
        except Exception:
            self.closed = True
            logger.debug("Writer stopped for connection %s", self.connection_id, exc_info=True)


class ConnectionManager:
    """Tracks live connections and which participant each one speaks for."""

    def __init__(self) -> None:
        # connection_id -> ClientConnection
        self._connections: dict[str, ClientConnection] = {}
        # room code -> {player_id -> ClientConnection}
        self._rooms: dict[str, dict[str, ClientConnection]] = {}

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self, ws: WebSocket) -> ClientConnection:
        await ws.accept()
        conn = ClientConnection(ws)
        conn.start()
        self.register(conn)
        logger.info("WS connect: connection=%s", conn.connection_id)
        return conn

    def register(self, conn: ClientConnection) -> None:
        self._connections[conn.connection_id] = conn

    def disconnect(self, conn: ClientConnection) -> None:
        self._connections.pop(conn.connection_id, None)
        conn.stop()
        logger.info("WS disconnect: connection=%s", conn.connection_id)

    # ------------------------------------------------------------------
    # Room membership
    # ------------------------------------------------------------------

    def attach(self, code: str, player_id: str, conn: ClientConnection) -> Optional[ClientConnection]:
        """Route a participant's room traffic to ``conn``.

        Any older connection for the same participant is told it was
        replaced and closed; it is returned so callers can forget it.
        """
        members = self._rooms.setdefault(code, {})
        old = members.get(player_id)
        members[player_id] = conn
        if old is not None and old is not conn:
            old.send({"type": "session_replaced", "message": "Replaced by new connection"})
            old.close(REPLACED_CLOSE_CODE, "Replaced by new connection")
            return old
        return None

    def detach(self, code: str, player_id: str, conn: Optional[ClientConnection] = None) -> None:
        """Stop routing to a participant.  If conn is given, only detach when it matches."""
        members = self._rooms.get(code)
        if not members:
            return
        existing = members.get(player_id)
        if existing is not None and (conn is None or existing is conn):
            del members[player_id]
            if not members:
                del self._rooms[code]

    def drop_room(self, code: str) -> None:
        self._rooms.pop(code, None)

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    def send_to_player(self, code: str, player_id: str, message: Union[str, dict[str, Any]]) -> None:
        conn = self._rooms.get(code, {}).get(player_id)
        if conn is not None and not conn.send(message):
            self.detach(code, player_id, conn)

    def broadcast(
        self,
        code: str,
        message: Union[str, dict[str, Any]],
        exclude: Optional[ClientConnection] = None,
    ) -> None:
        """Queue a frame for every participant connection in a room."""
        text = encode(message)
        stale: list[tuple[str, ClientConnection]] = []
        for player_id, conn in list(self._rooms.get(code, {}).items()):
            if conn is exclude:
                continue
            if not conn.send(text):
                stale.append((player_id, conn))
        for player_id, conn in stale:
            self.detach(code, player_id, conn)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def connection_count(self) -> int:
        return len(self._connections)
