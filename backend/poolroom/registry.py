"""In-memory room registry with per-room locks."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Iterator, Optional

from poolroom import config
from poolroom.engine import Participant, Room
from poolroom.errors import RoomLimitReached, RoomNotFound

logger = logging.getLogger(__name__)

CODE_MIN = 1000
CODE_MAX = 9999


def _generate_code() -> str:
    """Generate a 4-digit room code."""
    return str(random.randint(CODE_MIN, CODE_MAX))


def parse_starting_balance(value: Any) -> int:
    """Positive integer balance, or the configured default."""
    try:
        balance = int(value)
    except (TypeError, ValueError, OverflowError):
        return config.DEFAULT_STARTING_BALANCE
    return balance if balance > 0 else config.DEFAULT_STARTING_BALANCE


class RoomRegistry:
    """Owns every live Room and the lock that serializes access to it."""

    def __init__(self) -> None:
        self._rooms: dict[str, Room] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def create_room(
        self,
        owner_name: Any,
        starting_balance: Any = None,
        connection_id: Optional[str] = None,
    ) -> tuple[Room, Participant]:
        """Create a room seated with its owner.  Returns (room, owner)."""
        if len(self._rooms) >= CODE_MAX - CODE_MIN + 1:
            raise RoomLimitReached()

        code = _generate_code()
        while code in self._rooms:
            logger.debug("Room code collision on %s, regenerating", code)
            code = _generate_code()

        room = Room(code, parse_starting_balance(starting_balance))
        # Raises InvalidInput before the room becomes visible
        owner = room.add_owner(owner_name, connection_id)

        self._rooms[code] = room
        logger.info("Room %s created by %s", code, owner.name)
        return room, owner

    def get(self, code: str) -> Optional[Room]:
        return self._rooms.get(code)

    def find_room(self, code: str) -> Room:
        room = self._rooms.get(code)
        if room is None:
            raise RoomNotFound()
        return room

    def delete_room(self, code: str) -> None:
        """Forget a room.  Its lock stays, so a later room reusing the code
        shares it with anyone still waiting."""
        if self._rooms.pop(code, None) is not None:
            logger.info("Room %s deleted (empty)", code)

    def lock(self, code: str) -> asyncio.Lock:
        """Return the exclusive lock for a room code, creating it on demand.

        Locks are never dropped while the process runs; there is at most one
        per possible code.
        """
        lock = self._locks.get(code)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[code] = lock
        return lock

    def clear(self) -> None:
        self._rooms.clear()
        self._locks.clear()

    def __contains__(self, code: object) -> bool:
        return code in self._rooms

    def __iter__(self) -> Iterator[Room]:
        return iter(list(self._rooms.values()))

    def __len__(self) -> int:
        return len(self._rooms)
