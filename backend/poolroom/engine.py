"""Room state machine for a shared-pool betting table.

Owns the authoritative room state: participants in turn order, balances,
the pool, turn rotation, round settlement and the bounded activity log.
Every operation validates all of its preconditions before touching state,
so a raised ``RoomError`` always leaves the room exactly as it was.
"""

from __future__ import annotations

import time
import uuid
from collections import deque
from typing import Any, Optional, Sequence

from poolroom import config
from poolroom.errors import (
    AlreadyPacked,
    CannotRemoveOwner,
    DuplicateName,
    EmptyPool,
    Forbidden,
    InsufficientBalance,
    InvalidAmount,
    InvalidInput,
    NotFound,
    NotInRoom,
    NotYourTurn,
    RejoinFailed,
    TargetInactive,
)

AUTO_WINNER = "System (Auto)"


def generate_player_id() -> str:
    return str(uuid.uuid4())


def normalize_name(name: Any) -> str:
    """Strip a display name, rejecting anything empty or non-string."""
    if not isinstance(name, str) or not name.strip():
        raise InvalidInput("Please enter your name")
    return name.strip()


def coerce_amount(amount: Any) -> int:
    """Accept whole-number bids from loosely typed clients."""
    if isinstance(amount, bool):
        raise InvalidAmount()
    if isinstance(amount, int):
        value = amount
    elif isinstance(amount, float) and amount.is_integer():
        value = int(amount)
    elif isinstance(amount, str) and amount.strip().isdecimal():
        try:
            value = int(amount.strip())
        except ValueError:
            # Over the interpreter's digit limit
            raise InvalidAmount()
    else:
        raise InvalidAmount()
    if value <= 0:
        raise InvalidAmount()
    return value


def next_active_index(packed: Sequence[bool], current: int) -> Optional[int]:
    """Return the first unpacked seat after ``current``, wrapping around.

    ``current`` itself is checked last.  Returns None when every seat is
    packed (or there are no seats).
    """
    n = len(packed)
    for step in range(1, n + 1):
        idx = (current + step) % n
        if not packed[idx]:
            return idx
    return None


class Participant:
    """A joined player, identified by an id that survives reconnects."""

    def __init__(
        self,
        player_id: str,
        name: str,
        balance: int,
        *,
        is_owner: bool = False,
        connection_id: Optional[str] = None,
    ) -> None:
        self.player_id = player_id
        self.name = name
        self.balance = balance
        self.is_owner = is_owner
        self.packed: bool = False
        self.connection_id = connection_id
        # Bumped on every (re)bind so a stale grace timer can tell it lost
        self.epoch: int = 0

    @property
    def connected(self) -> bool:
        return self.connection_id is not None

    def bind(self, connection_id: str) -> None:
        self.connection_id = connection_id
        self.epoch += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.player_id,
            "name": self.name,
            "balance": self.balance,
            "is_owner": self.is_owner,
            "packed": self.packed,
            "connected": self.connected,
        }


class RoomLog:
    """Timestamped activity feed, keeping only the most recent entries."""

    def __init__(self, capacity: int | None = None) -> None:
        self.capacity = capacity or config.LOG_CAPACITY
        self._entries: deque[str] = deque(maxlen=self.capacity)

    def add(self, message: str) -> str:
        entry = f"[{time.strftime('%H:%M:%S')}] {message}"
        self._entries.append(entry)
        return entry

    def entries(self) -> list[str]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


class Room:
    """Authoritative state for one room.

    Not thread- or task-safe on its own: callers serialize access with the
    room's lock from ``RoomRegistry``.  Mutating methods return the event
    dict to broadcast (``{"type": ..., ...}``) or None.
    """

    def __init__(
        self,
        code: str,
        starting_balance: int,
        *,
        log_capacity: int | None = None,
    ) -> None:
        self.code = code
        self.starting_balance = starting_balance
        self.participants: list[Participant] = []
        self.pool: int = 0
        self.current_turn: int = 0
        self.round: int = 1
        self.total_bids: int = 0
        self.creator: str = ""
        self.log = RoomLog(log_capacity)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _find_player_idx(self, player_id: str) -> Optional[int]:
        for i, p in enumerate(self.participants):
            if p.player_id == player_id:
                return i
        return None

    def find_player(self, player_id: str) -> Optional[Participant]:
        idx = self._find_player_idx(player_id)
        return self.participants[idx] if idx is not None else None

    def _require_player(self, player_id: str) -> tuple[int, Participant]:
        idx = self._find_player_idx(player_id)
        if idx is None:
            raise NotInRoom("Player not found")
        return idx, self.participants[idx]

    def _require_owner(self, player_id: str, message: str) -> Participant:
        player = self.find_player(player_id)
        if player is None or not player.is_owner:
            raise Forbidden(message)
        return player

    def _name_taken(self, name: str) -> bool:
        folded = name.casefold()
        return any(p.name.casefold() == folded for p in self.participants)

    @property
    def current_player(self) -> Optional[Participant]:
        if not self.participants:
            return None
        return self.participants[self.current_turn]

    def active_players(self) -> list[Participant]:
        return [p for p in self.participants if not p.packed]

    # ------------------------------------------------------------------
    # Turn scheduling
    # ------------------------------------------------------------------

    def _advance_turn(self) -> None:
        """Move the turn to the next unpacked participant, if any."""
        if not self.participants:
            return
        idx = next_active_index([p.packed for p in self.participants], self.current_turn)
        if idx is not None:
            self.current_turn = idx

    def _ensure_active_turn(self) -> None:
        """Keep the turn off packed participants after structural changes."""
        if not self.participants:
            self.current_turn = 0
            return
        if self.current_turn >= len(self.participants):
            self.current_turn = 0
        if not self.participants[self.current_turn].packed:
            return
        if not self.active_players():
            # Every remaining seat folded; open a fresh betting pass, pool intact
            for p in self.participants:
                p.packed = False
            return
        self._advance_turn()

    def _reindex_after_removal(self, removed_idx: int) -> None:
        if removed_idx < self.current_turn:
            self.current_turn -= 1
        if self.current_turn >= len(self.participants):
            self.current_turn = 0
        self._ensure_active_turn()

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def _settle(self, winner_idx: int, declared_by: str) -> dict[str, Any]:
        """Pay the pool to a winner and start the next round with them."""
        winner = self.participants[winner_idx]
        amount = self.pool
        winner.balance += amount

        self.pool = 0
        self.round += 1
        self.total_bids = 0
        for p in self.participants:
            p.packed = False
        self.current_turn = winner_idx

        if declared_by == AUTO_WINNER:
            self.log.add(f"{winner.name} won ₹{amount}! (All others packed)")
        else:
            self.log.add(f"{winner.name} won ₹{amount}! Declared by {declared_by}")

        return {
            "type": "winner_declared",
            "winner": {"id": winner.player_id, "name": winner.name, "amount": amount},
            "declared_by": declared_by,
        }

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def add_owner(self, name: str, connection_id: Optional[str] = None) -> Participant:
        """Seat the creating participant.  Only valid on an empty room."""
        name = normalize_name(name)
        if self.participants:
            raise InvalidInput("Room already has an owner")
        owner = Participant(
            generate_player_id(),
            name,
            self.starting_balance,
            is_owner=True,
        )
        if connection_id is not None:
            owner.bind(connection_id)
        self.participants.append(owner)
        self.creator = name
        self.log.add(f"{name} created the room")
        return owner

    def join(self, name: Any, connection_id: Optional[str] = None) -> Participant:
        name = normalize_name(name)
        if self._name_taken(name):
            raise DuplicateName()

        player = Participant(generate_player_id(), name, self.starting_balance)
        if connection_id is not None:
            player.bind(connection_id)
        self.participants.append(player)
        self.log.add(f"{name} joined the game")
        self._ensure_active_turn()
        return player

    def rejoin(self, player_id: str, connection_id: str) -> tuple[Participant, Optional[str]]:
        """Rebind a participant to a new connection.

        Returns the participant and the connection id it was bound to before
        (None if it was already marked disconnected).
        """
        player = self.find_player(player_id)
        if player is None:
            raise RejoinFailed("Player not found in room")
        previous = player.connection_id
        player.bind(connection_id)
        self.log.add(f"{player.name} reconnected")
        return player, previous

    def mark_disconnected(self, player_id: str, connection_id: str) -> Optional[int]:
        """Unbind a dropped connection.

        Returns the participant's epoch for the grace timer, or None when the
        participant is gone or already bound to a different connection.
        """
        player = self.find_player(player_id)
        if player is None or player.connection_id != connection_id:
            return None
        player.connection_id = None
        return player.epoch

    def leave(self, player_id: str, *, timed_out: bool = False) -> dict[str, Any]:
        """Remove a participant unconditionally.

        The returned event carries ``room_empty`` so the caller can drop the
        room from the registry.
        """
        idx, player = self._require_player(player_id)
        was_owner = player.is_owner

        del self.participants[idx]
        suffix = " (timeout)" if timed_out else ""
        self.log.add(f"{player.name} left the game{suffix}")

        if was_owner and self.participants:
            self.participants[0].is_owner = True
            self.creator = self.participants[0].name

        self._reindex_after_removal(idx)
        return {
            "type": "player_left",
            "player_name": player.name,
            "player_id": player.player_id,
            "room_empty": not self.participants,
        }

    def remove_participant(self, requester_id: str, target_id: str) -> tuple[dict[str, Any], Participant]:
        """Host removes another participant.  Returns (event, removed)."""
        host = self._require_owner(requester_id, "Only the host can remove players")
        idx = self._find_player_idx(target_id)
        if idx is None:
            raise NotFound()
        target = self.participants[idx]
        if target.is_owner:
            raise CannotRemoveOwner()

        del self.participants[idx]
        self.log.add(f"{target.name} was removed by {host.name}")
        self._reindex_after_removal(idx)
        event = {
            "type": "player_left",
            "player_name": target.name,
            "player_id": target.player_id,
            "removed_by": host.name,
            "room_empty": False,
        }
        return event, target

    # ------------------------------------------------------------------
    # Betting
    # ------------------------------------------------------------------

    def place_bid(self, player_id: str, amount: Any) -> dict[str, Any]:
        idx, player = self._require_player(player_id)
        if idx != self.current_turn:
            raise NotYourTurn()
        value = coerce_amount(amount)
        if value > player.balance:
            raise InsufficientBalance()

        player.balance -= value
        self.pool += value
        self.total_bids += 1
        self.log.add(f"{player.name} bid ₹{value}")
        self._advance_turn()

        return {
            "type": "bid_placed",
            "player": player.name,
            "player_id": player.player_id,
            "amount": value,
        }

    def pack(self, player_id: str) -> list[dict[str, Any]]:
        """Fold for the rest of the round.

        Returns the pack event, followed by a settlement event when only one
        participant is left standing.
        """
        idx, player = self._require_player(player_id)
        if player.packed:
            raise AlreadyPacked()
        if idx != self.current_turn:
            raise NotYourTurn("You can only pack during your turn")

        player.packed = True
        self.log.add(f"{player.name} packed (folded)")
        self._advance_turn()

        events: list[dict[str, Any]] = [
            {"type": "player_packed", "player": player.name, "player_id": player.player_id}
        ]

        standing = [i for i, p in enumerate(self.participants) if not p.packed]
        if len(standing) == 1:
            events.append(self._settle(standing[0], AUTO_WINNER))
        elif not standing:
            # Nobody else was left to play against
            events.append(self._settle(idx, AUTO_WINNER))
        return events

    # ------------------------------------------------------------------
    # Host controls
    # ------------------------------------------------------------------

    def reset_pool(self, requester_id: str) -> dict[str, Any]:
        host = self._require_owner(requester_id, "Only the room creator can reset the pool")

        final_amount = self.pool
        self.pool = 0
        self.round = 1
        self.total_bids = 0
        self.current_turn = 0
        for p in self.participants:
            p.balance = self.starting_balance
            p.packed = False

        self.log.add(
            f"Pool reset by {host.name}. Game restarted - Round {self.round}. "
            f"All balances restored to ₹{self.starting_balance}."
        )
        return {
            "type": "pool_reset",
            "final_amount": final_amount,
            "starting_balance": self.starting_balance,
            "message": f"All player balances have been reset to ₹{self.starting_balance}",
        }

    def declare_winner(self, requester_id: str, winner_id: str) -> dict[str, Any]:
        host = self._require_owner(requester_id, "Only the host can declare a winner")
        if self.pool <= 0:
            raise EmptyPool()
        winner_idx = self._find_player_idx(winner_id)
        if winner_idx is None:
            raise NotFound("Winner not found")
        return self._settle(winner_idx, host.name)

    def change_turn(self, requester_id: str, target_id: str) -> dict[str, Any]:
        host = self._require_owner(requester_id, "Only the host can change turn")
        idx = self._find_player_idx(target_id)
        if idx is None:
            raise NotFound()
        target = self.participants[idx]
        if target.packed:
            raise TargetInactive()

        self.current_turn = idx
        self.log.add(f"Turn changed to {target.name} by {host.name}")
        return {
            "type": "turn_changed",
            "new_turn_player": target.name,
            "new_turn_player_id": target.player_id,
            "changed_by": host.name,
        }

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        current = self.current_player
        return {
            "code": self.code,
            "creator": self.creator,
            "starting_balance": self.starting_balance,
            "players": [p.to_dict() for p in self.participants],
            "pool": self.pool,
            "current_turn": self.current_turn,
            "current_player_id": current.player_id if current else None,
            "round": self.round,
            "total_bids": self.total_bids,
            "log": self.log.entries(),
        }
