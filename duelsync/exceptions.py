"""Exceptions raised by the room lifecycle and the store boundary.

Validation errors carry a human-readable message meant to be shown to the
player as-is. Transport faults are absorbed by reconnection and only surface
as ConnectionLost once retries are exhausted.
"""


class DuelSyncException(Exception):
    """Base class for every error raised by duelsync"""
    pass


# ============ Room validation ============

class RoomValidationError(DuelSyncException):
    """An invalid room state transition was requested"""
    pass


class RoomNotFound(RoomValidationError):
    def __init__(self, room_ref):
        self.room_ref = room_ref
        super().__init__(f"Room {room_ref} not found or already started")


class RoomFull(RoomValidationError):
    def __init__(self, room_ref):
        self.room_ref = room_ref
        super().__init__("Room is full")


class AlreadyJoined(RoomValidationError):
    def __init__(self, player_id):
        self.player_id = player_id
        super().__init__("You are already in this room")


class NotHost(RoomValidationError):
    def __init__(self, player_id):
        self.player_id = player_id
        super().__init__("Only host can start the game")


class NotEnoughPlayers(RoomValidationError):
    def __init__(self, player_count: int):
        self.player_count = player_count
        super().__init__(f"Need 2 players to start, got {player_count}")


class NotAllReady(RoomValidationError):
    def __init__(self, not_ready: list):
        self.not_ready = not_ready
        super().__init__("All players must be ready")


class InvalidStateTransition(RoomValidationError):
    pass


# ============ Store / transport ============

class StoreError(DuelSyncException):
    """A store call on a critical path returned an error"""

    def __init__(self, table: str, operation: str, error):
        self.table = table
        self.operation = operation
        self.error = error
        super().__init__(f"Failed to {operation} {table}: {error}")


class ConnectionLost(DuelSyncException):
    """Reconnection gave up after the maximum number of attempts"""

    def __init__(self, room_id, attempts: int):
        self.room_id = room_id
        self.attempts = attempts
        super().__init__(
            f"Lost connection to room {room_id} after {attempts} reconnection attempts"
        )
