"""Pydantic models for room requests and snapshots."""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel

from poolroom import config


class Action(str, Enum):
    CREATE_ROOM = "create_room"
    JOIN_ROOM = "join_room"
    REJOIN_ROOM = "rejoin_room"
    PLACE_BID = "place_bid"
    PACK_CARDS = "pack_cards"
    RESET_POOL = "reset_pool"
    DECLARE_WINNER = "declare_winner"
    REMOVE_PLAYER = "remove_player"
    CHANGE_TURN = "change_turn"
    LEAVE_ROOM = "leave_room"
    PING = "ping"


# --- Request models ---
# Loosely typed fields are checked by the engine and room manager, so bad
# values map to classified room errors rather than schema errors.


class CreateRoomRequest(BaseModel):
    creator_name: Any = None
    starting_balance: Any = config.DEFAULT_STARTING_BALANCE


class JoinRoomRequest(BaseModel):
    player_name: Any = None
    room_code: str = ""


class RejoinRoomRequest(BaseModel):
    room_code: Any = None
    player_id: Any = None
    player_name: Any = None


class PlaceBidRequest(BaseModel):
    amount: Any = None


class DeclareWinnerRequest(BaseModel):
    winner_id: str


class RemovePlayerRequest(BaseModel):
    player_id_to_remove: str


class ChangeTurnRequest(BaseModel):
    new_turn_player_id: str


# --- Response / state models ---


class PlayerInfo(BaseModel):
    """Public-facing participant information."""

    id: str
    name: str
    balance: int
    is_owner: bool = False
    packed: bool = False
    connected: bool = False


class RoomState(BaseModel):
    """Full room snapshot sent to clients after every change."""

    code: str
    creator: str
    starting_balance: int
    players: list[PlayerInfo]
    pool: int
    current_turn: int
    current_player_id: Optional[str] = None
    round: int
    total_bids: int
    log: list[str]


class RoomSummary(BaseModel):
    code: str
    player_count: int
    connected_count: int
    round: int
    pool: int
