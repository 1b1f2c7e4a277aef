"""Room manager: applies room actions under the per-room lock and publishes events.

Every mutating action follows the same shape: resolve who is acting from the
connection's session, take the room lock, run one ``Room`` operation, then
queue the resulting events and a fresh snapshot for the room.  Frames are
queued while the lock is held so that clients see them in mutation order;
actual socket writes happen on each connection's writer task.
"""

from __future__ import annotations

import logging
import re
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from poolroom.engine import Participant, Room
from poolroom.errors import InvalidInput, NotInRoom, RejoinFailed, RoomNotFound
from poolroom.models import (
    ChangeTurnRequest,
    CreateRoomRequest,
    DeclareWinnerRequest,
    JoinRoomRequest,
    PlaceBidRequest,
    RejoinRoomRequest,
    RemovePlayerRequest,
    RoomState,
)
from poolroom.presence import PresenceTracker
from poolroom.registry import RoomRegistry
from poolroom.ws_manager import ClientConnection, ConnectionManager

logger = logging.getLogger(__name__)

_ROOM_CODE = re.compile(r"^\d{4}$")


def build_room_state(room: Room) -> RoomState:
    return RoomState(**room.to_dict())


def room_update(room: Room) -> dict[str, Any]:
    return {"type": "room_update", "room": build_room_state(room).model_dump(mode="json")}


class RoomManager:
    """Serializes room actions and routes their outcomes to connections."""

    def __init__(
        self,
        registry: RoomRegistry,
        connections: ConnectionManager,
        presence: PresenceTracker,
    ) -> None:
        self.registry = registry
        self.connections = connections
        self.presence = presence
        presence.set_expiry_handler(self.handle_disconnect_timeout)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _publish(self, room: Room, *events: dict[str, Any]) -> None:
        """Queue semantic events followed by the room snapshot."""
        for event in events:
            self.connections.broadcast(room.code, event)
        self.connections.broadcast(room.code, room_update(room))

    def _bind(self, conn: ClientConnection, room: Room, player: Participant) -> None:
        self.presence.bind(conn.connection_id, room.code, player.player_id)
        self.connections.attach(room.code, player.player_id, conn)

    def _ensure_unbound(self, conn: ClientConnection) -> None:
        if self.presence.lookup(conn.connection_id) is not None:
            raise InvalidInput("You are already in a room. Leave it first.")

    @asynccontextmanager
    async def _acting(self, conn: ClientConnection) -> AsyncIterator[tuple[Room, str]]:
        """Lock the caller's room and yield (room, player_id).

        Only the participant's most recently bound connection may act.
        """
        session = self.presence.lookup(conn.connection_id)
        if session is None or session.code not in self.registry:
            raise NotInRoom()
        async with self.registry.lock(session.code):
            room = self.registry.get(session.code)
            if room is None:
                raise NotInRoom("Room not found")
            player = room.find_player(session.player_id)
            if player is None or player.connection_id != conn.connection_id:
                raise NotInRoom()
            yield room, session.player_id

    # ------------------------------------------------------------------
    # Entry
    # ------------------------------------------------------------------

    async def create_room(self, conn: ClientConnection, req: CreateRoomRequest) -> Room:
        self._ensure_unbound(conn)
        room, owner = self.registry.create_room(
            req.creator_name, req.starting_balance, conn.connection_id
        )
        async with self.registry.lock(room.code):
            self._bind(conn, room, owner)
            conn.send(
                {
                    "type": "room_created",
                    "success": True,
                    "room_code": room.code,
                    "player": owner.to_dict(),
                    "room": build_room_state(room).model_dump(mode="json"),
                }
            )
        return room

    async def join_room(self, conn: ClientConnection, req: JoinRoomRequest) -> Participant:
        self._ensure_unbound(conn)
        if not isinstance(req.player_name, str) or not req.player_name.strip():
            raise InvalidInput("Please enter your name")
        if not _ROOM_CODE.match(req.room_code):
            raise InvalidInput("Please enter a valid 4-digit room code")
        if req.room_code not in self.registry:
            raise RoomNotFound()

        async with self.registry.lock(req.room_code):
            room = self.registry.find_room(req.room_code)
            player = room.join(req.player_name, conn.connection_id)
            self._bind(conn, room, player)
            conn.send(
                {
                    "type": "room_joined",
                    "success": True,
                    "room_code": room.code,
                    "player": player.to_dict(),
                    "room": build_room_state(room).model_dump(mode="json"),
                }
            )
            self._publish(room)
        logger.info("%s joined room %s", player.name, room.code)
        return player

    async def rejoin_room(self, conn: ClientConnection, req: RejoinRoomRequest) -> Participant:
        """Reattach a returning client to the participant it held before."""
        if not all(
            isinstance(v, str) and v.strip()
            for v in (req.room_code, req.player_id, req.player_name)
        ):
            raise RejoinFailed("Invalid rejoin data")
        session = self.presence.lookup(conn.connection_id)
        if session is not None and session != (req.room_code, req.player_id):
            raise InvalidInput("You are already in a room. Leave it first.")
        if req.room_code not in self.registry:
            raise RejoinFailed("Room not found")

        async with self.registry.lock(req.room_code):
            room = self.registry.get(req.room_code)
            if room is None:
                raise RejoinFailed("Room not found")
            player, previous = room.rejoin(req.player_id, conn.connection_id)
            if previous is not None and previous != conn.connection_id:
                self.presence.unbind(previous)
            self._bind(conn, room, player)

            snapshot = room_update(room)
            conn.send(
                {
                    "type": "room_rejoined",
                    "success": True,
                    "player": player.to_dict(),
                    "room": snapshot["room"],
                }
            )
            self.connections.broadcast(room.code, snapshot, exclude=conn)
        logger.info("%s rejoined room %s", player.name, room.code)
        return player

    # ------------------------------------------------------------------
    # Turn actions
    # ------------------------------------------------------------------

    async def place_bid(self, conn: ClientConnection, req: PlaceBidRequest) -> None:
        async with self._acting(conn) as (room, player_id):
            event = room.place_bid(player_id, req.amount)
            self._publish(room, event)

    async def pack(self, conn: ClientConnection) -> None:
        async with self._acting(conn) as (room, player_id):
            events = room.pack(player_id)
            self._publish(room, *events)

    # ------------------------------------------------------------------
    # Host actions
    # ------------------------------------------------------------------

    async def reset_pool(self, conn: ClientConnection) -> None:
        async with self._acting(conn) as (room, player_id):
            event = room.reset_pool(player_id)
            self._publish(room, event)

    async def declare_winner(self, conn: ClientConnection, req: DeclareWinnerRequest) -> None:
        async with self._acting(conn) as (room, player_id):
            event = room.declare_winner(player_id, req.winner_id)
            self._publish(room, event)

    async def remove_player(self, conn: ClientConnection, req: RemovePlayerRequest) -> None:
        async with self._acting(conn) as (room, player_id):
            event, removed = room.remove_participant(player_id, req.player_id_to_remove)
            host_name = event["removed_by"]

            self.connections.send_to_player(
                room.code,
                removed.player_id,
                {
                    "type": "player_removed",
                    "message": f"You have been removed from the room by {host_name}",
                    "host_name": host_name,
                },
            )
            self.connections.detach(room.code, removed.player_id)
            self.presence.unbind(removed.connection_id)
            self._publish(room, event)
        logger.info("%s was removed from room %s by %s", removed.name, room.code, host_name)

    async def change_turn(self, conn: ClientConnection, req: ChangeTurnRequest) -> None:
        async with self._acting(conn) as (room, player_id):
            event = room.change_turn(player_id, req.new_turn_player_id)
            self._publish(room, event)

    # ------------------------------------------------------------------
    # Departure
    # ------------------------------------------------------------------

    def _after_leave(self, room: Room, event: dict[str, Any]) -> None:
        """Delete an emptied room, otherwise tell the remaining players."""
        self.connections.detach(room.code, event["player_id"])
        if event["room_empty"]:
            self.registry.delete_room(room.code)
            self.connections.drop_room(room.code)
        else:
            self._publish(room, event)
        logger.info("%s left room %s", event["player_name"], room.code)

    async def leave_room(self, conn: ClientConnection) -> None:
        """Leave voluntarily.  A connection outside any room is ignored."""
        session = self.presence.lookup(conn.connection_id)
        if session is None:
            return
        if session.code not in self.registry:
            self.presence.unbind(conn.connection_id)
            return
        async with self.registry.lock(session.code):
            self.presence.unbind(conn.connection_id)
            room = self.registry.get(session.code)
            if room is None:
                return
            player = room.find_player(session.player_id)
            if player is None or player.connection_id != conn.connection_id:
                return
            event = room.leave(session.player_id)
            self._after_leave(room, event)
        conn.send({"type": "left_room", "room_code": session.code})

    async def handle_disconnect(self, conn: ClientConnection) -> None:
        """Mark a dropped connection's participant as away and start its grace timer."""
        session = self.presence.unbind(conn.connection_id)
        if session is None or session.code not in self.registry:
            return
        async with self.registry.lock(session.code):
            room = self.registry.get(session.code)
            if room is None:
                return
            epoch = room.mark_disconnected(session.player_id, conn.connection_id)
            if epoch is None:
                return
            self.connections.detach(room.code, session.player_id, conn)
            self.presence.schedule_removal(room.code, session.player_id, epoch)
            self.connections.broadcast(room.code, room_update(room))

    async def handle_disconnect_timeout(self, code: str, player_id: str, epoch: int) -> bool:
        """Remove a participant whose grace period ran out.

        Returns False (and changes nothing) when the room or participant is
        gone, or the participant has reconnected since the drop.
        """
        if code not in self.registry:
            return False
        async with self.registry.lock(code):
            room = self.registry.get(code)
            if room is None:
                return False
            player = room.find_player(player_id)
            if player is None or player.connected or player.epoch != epoch:
                return False
            event = room.leave(player_id, timed_out=True)
            self._after_leave(room, event)
        logger.info("%s removed from room %s after timeout", event["player_name"], code)
        return True
