"""Session presence: binds connections to participants and expires dropped seats.

A dropped connection does not remove its participant right away.  Instead a
grace deadline is recorded against ``(room code, player id, epoch)``, where
the epoch is the participant's bind counter at the moment of the drop.  When
the deadline passes, the expiry handler re-checks the epoch under the room
lock; a participant who rejoined in the meantime has a newer epoch, so the
stale deadline is simply discarded.  Nothing is ever cancelled explicitly.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, NamedTuple, Optional

from poolroom import config

logger = logging.getLogger(__name__)


class Session(NamedTuple):
    code: str
    player_id: str


class RemovalKey(NamedTuple):
    code: str
    player_id: str
    epoch: int


ExpiryHandler = Callable[[str, str, int], Awaitable[None]]


class PresenceTracker:
    """Maps live connections to seats and runs the disconnect grace timers."""

    def __init__(
        self,
        grace_period: float | None = None,
        tick_interval: float | None = None,
    ) -> None:
        self.grace_period = config.GRACE_PERIOD if grace_period is None else grace_period
        self.tick_interval = (
            config.PRESENCE_TICK_INTERVAL if tick_interval is None else tick_interval
        )
        # connection_id -> Session
        self._sessions: dict[str, Session] = {}
        # RemovalKey -> deadline (Unix timestamp)
        self._deadlines: dict[RemovalKey, float] = {}
        self._handler: Optional[ExpiryHandler] = None
        self._task: asyncio.Task | None = None

    def set_expiry_handler(self, handler: ExpiryHandler) -> None:
        """Inject the callback that removes an expired participant."""
        self._handler = handler

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def bind(self, connection_id: str, code: str, player_id: str) -> None:
        self._sessions[connection_id] = Session(code, player_id)

    def unbind(self, connection_id: Optional[str]) -> Optional[Session]:
        if connection_id is None:
            return None
        return self._sessions.pop(connection_id, None)

    def lookup(self, connection_id: str) -> Optional[Session]:
        return self._sessions.get(connection_id)

    # ------------------------------------------------------------------
    # Grace timers
    # ------------------------------------------------------------------

    def schedule_removal(
        self, code: str, player_id: str, epoch: int, now: float | None = None
    ) -> float:
        """Record a removal deadline for a dropped participant."""
        deadline = (time.time() if now is None else now) + self.grace_period
        self._deadlines[RemovalKey(code, player_id, epoch)] = deadline
        logger.info(
            "%s disconnected from room %s, waiting %.0fs for reconnection",
            player_id,
            code,
            self.grace_period,
        )
        return deadline

    def pending(self) -> list[RemovalKey]:
        return list(self._deadlines)

    async def expire_due(self, now: float | None = None) -> list[RemovalKey]:
        """Fire every deadline that has passed.  Returns the keys fired."""
        now = time.time() if now is None else now
        expired = [key for key, dl in list(self._deadlines.items()) if now >= dl]

        for key in expired:
            self._deadlines.pop(key, None)
            if self._handler is None:
                continue
            try:
                await self._handler(key.code, key.player_id, key.epoch)
            except Exception:
                logger.exception("Grace expiry failed for %s in room %s", key.player_id, key.code)
        return expired

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())
            logger.info("Presence tracker started (grace=%ss)", self.grace_period)

    def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            logger.info("Presence tracker stopped")

    async def _loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.tick_interval)
                await self.expire_due()
        except asyncio.CancelledError:
            pass
