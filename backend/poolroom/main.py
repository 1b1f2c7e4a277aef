"""FastAPI application: WebSocket room actions plus read-only REST endpoints."""

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable

from fastapi import FastAPI, HTTPException, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from poolroom import config
from poolroom.errors import InvalidInput, RoomError
from poolroom.models import (
    Action,
    ChangeTurnRequest,
    CreateRoomRequest,
    DeclareWinnerRequest,
    JoinRoomRequest,
    PlaceBidRequest,
    RejoinRoomRequest,
    RemovePlayerRequest,
    RoomState,
    RoomSummary,
)
from poolroom.presence import PresenceTracker
from poolroom.registry import RoomRegistry
from poolroom.room_manager import RoomManager, build_room_state
from poolroom.ws_manager import ClientConnection, ConnectionManager

logger = logging.getLogger(__name__)

registry = RoomRegistry()
connections = ConnectionManager()
presence = PresenceTracker()
rooms = RoomManager(registry, connections, presence)


@asynccontextmanager
async def lifespan(app: FastAPI):
    presence.start()
    yield
    presence.stop()


app = FastAPI(title="Pool Room API", lifespan=lifespan)

# ---------- Rate Limiting ----------

limiter = Limiter(
    key_func=get_remote_address,
    enabled=config.RATE_LIMIT_ENABLED,
)
app.state.limiter = limiter


@app.exception_handler(RateLimitExceeded)
async def _rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content={"detail": "Rate limit exceeded. Please slow down."},
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # tighten in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------- REST endpoints ----------


@app.get("/health")
async def health():
    return {"status": "ok", "rooms": len(registry), "connections": connections.connection_count()}


@app.get("/api/rooms")
@limiter.limit("30/minute")
async def list_rooms(request: Request) -> list[RoomSummary]:
    return [
        RoomSummary(
            code=room.code,
            player_count=len(room.participants),
            connected_count=sum(1 for p in room.participants if p.connected),
            round=room.round,
            pool=room.pool,
        )
        for room in registry
    ]


@app.get("/api/rooms/{code}", response_model=RoomState)
@limiter.limit("30/minute")
async def get_room(request: Request, code: str):
    room = registry.get(code)
    if room is None:
        raise HTTPException(status_code=404, detail="Room not found")
    return build_room_state(room)


# ---------- WebSocket ----------


def _parse(model: type[BaseModel], payload: dict[str, Any]) -> Any:
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise InvalidInput(e.errors()[0].get("msg", "Invalid request"))


async def _ping(conn: ClientConnection, payload: dict[str, Any]) -> None:
    conn.send({"type": "pong"})


_HANDLERS: dict[str, Callable[[ClientConnection, dict[str, Any]], Awaitable[Any]]] = {
    Action.CREATE_ROOM: lambda c, p: rooms.create_room(c, _parse(CreateRoomRequest, p)),
    Action.JOIN_ROOM: lambda c, p: rooms.join_room(c, _parse(JoinRoomRequest, p)),
    Action.REJOIN_ROOM: lambda c, p: rooms.rejoin_room(c, _parse(RejoinRoomRequest, p)),
    Action.PLACE_BID: lambda c, p: rooms.place_bid(c, _parse(PlaceBidRequest, p)),
    Action.PACK_CARDS: lambda c, p: rooms.pack(c),
    Action.RESET_POOL: lambda c, p: rooms.reset_pool(c),
    Action.DECLARE_WINNER: lambda c, p: rooms.declare_winner(c, _parse(DeclareWinnerRequest, p)),
    Action.REMOVE_PLAYER: lambda c, p: rooms.remove_player(c, _parse(RemovePlayerRequest, p)),
    Action.CHANGE_TURN: lambda c, p: rooms.change_turn(c, _parse(ChangeTurnRequest, p)),
    Action.LEAVE_ROOM: lambda c, p: rooms.leave_room(c),
    Action.PING: _ping,
}


async def handle_message(conn: ClientConnection, raw: str) -> None:
    """Dispatch one client frame; failures go back to the sender only."""
    action = ""
    try:
        try:
            msg = json.loads(raw)
        except (ValueError, RecursionError):
            # Also covers oversized integers and runaway nesting
            raise InvalidInput("Malformed message")
        if not isinstance(msg, dict) or not isinstance(msg.get("type", ""), str):
            raise InvalidInput("Malformed message")

        action = msg.get("type", "")
        handler = _HANDLERS.get(action)
        if handler is None:
            raise InvalidInput(f"Unknown action: {action}")
        await handler(conn, msg)
    except RoomError as e:
        conn.send({"type": "error", "action": action, **e.to_dict()})


@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    conn = await connections.connect(ws)
    try:
        while True:
            message = await ws.receive()
            if message["type"] == "websocket.disconnect":
                break
            raw = message.get("text")
            if raw is None:
                raw = (message.get("bytes") or b"").decode("utf-8", errors="replace")
            await handle_message(conn, raw)
    finally:
        try:
            await rooms.handle_disconnect(conn)
        except Exception:
            logger.exception("Error handling disconnect for %s", conn.connection_id)
        connections.disconnect(conn)
