"""Classified, recoverable room errors.

Every failure a client can provoke maps to one class here.  The transport
turns them into directed ``error`` frames; none of them crash a room.
Subclassing ``ValueError`` keeps ``except ValueError`` handlers working.
"""

from __future__ import annotations


class RoomError(ValueError):
    """Base class for all room-level failures."""

    default_message = "Request failed"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    @property
    def code(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


class InvalidInput(RoomError):
    default_message = "Invalid request"


class RoomNotFound(RoomError):
    default_message = "Room not found. Please check the room code."


class RoomLimitReached(RoomError):
    default_message = "No room codes available, try again later"


class DuplicateName(RoomError):
    default_message = "A player with this name already exists in the room"


class NotInRoom(RoomError):
    default_message = "You are not in a room"


class NotYourTurn(RoomError):
    default_message = "It's not your turn!"


class InvalidAmount(RoomError):
    default_message = "Please enter a valid bid amount"


class InsufficientBalance(RoomError):
    default_message = "Insufficient balance!"


class AlreadyPacked(RoomError):
    default_message = "You have already packed"


class Forbidden(RoomError):
    default_message = "Only the host can do that"


class EmptyPool(RoomError):
    default_message = "Pool is empty. No winnings to distribute."


class NotFound(RoomError):
    default_message = "Player not found"


class CannotRemoveOwner(RoomError):
    default_message = "Host cannot remove themselves. Use Leave Room instead."


class TargetInactive(RoomError):
    default_message = "Cannot set turn to a packed player"


class RejoinFailed(RoomError):
    default_message = "Could not rejoin room"
