"""Room lifecycle rules that are independent from the store and the transport.

Rule of thumb:
- OK: code generation, backoff math, liveness checks, start preconditions.
- Not OK: touching the store, channels, datetime.now(), etc.
"""
import random
import string
from datetime import datetime, timezone
from typing import Iterable, Optional

from duelsync.exceptions import NotAllReady, NotEnoughPlayers, NotHost
from duelsync.models.schema_models import RoomPlayerSchema

ROOM_CODE_LENGTH = 5
ROOM_CODE_ALPHABET = string.ascii_uppercase
MAX_PLAYERS = 2

HEARTBEAT_INTERVAL_SEC = 3.0
HEARTBEAT_TIMEOUT_SEC = 10.0

RECONNECT_BASE_DELAY_SEC = 1.0
RECONNECT_MAX_DELAY_SEC = 10.0
MAX_RECONNECT_ATTEMPTS = 5


def generate_room_code(rng: Optional[random.Random] = None) -> str:
    """Return a 5-letter uppercase room code, each letter drawn uniformly.

    Uniqueness against existing rooms is not checked.
    """
    rng = rng or random
    return "".join(rng.choice(ROOM_CODE_ALPHABET) for _ in range(ROOM_CODE_LENGTH))


def is_valid_room_code(code: str) -> bool:
    return (
        isinstance(code, str)
        and len(code) == ROOM_CODE_LENGTH
        and all(c in ROOM_CODE_ALPHABET for c in code)
    )


def reconnect_delay(
    attempt: int,
    base: float = RECONNECT_BASE_DELAY_SEC,
    cap: float = RECONNECT_MAX_DELAY_SEC,
) -> float:
    """Backoff delay in seconds for the given 1-based attempt"""
    return min(base * 2 ** (attempt - 1), cap)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; they are stored as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_heartbeat_stale(
    last_heartbeat: Optional[datetime],
    now: datetime,
    timeout: float = HEARTBEAT_TIMEOUT_SEC,
) -> bool:
    """True when the gap between now and last_heartbeat exceeds the timeout"""
    if last_heartbeat is None:
        return False
    return (as_utc(now) - as_utc(last_heartbeat)).total_seconds() > timeout


def check_can_start(
    host_id: str, caller_id: str, players: Iterable[RoomPlayerSchema]
) -> None:
    """Raise unless the caller may start the game with these players

    Raises:
        NotHost: caller is not the room's host
        NotEnoughPlayers: the room does not hold exactly MAX_PLAYERS players
        NotAllReady: at least one player has not toggled ready
    """
    if host_id != caller_id:
        raise NotHost(caller_id)

    players = list(players)
    if len(players) != MAX_PLAYERS:
        raise NotEnoughPlayers(len(players))

    not_ready = [p.player_id for p in players if not p.is_ready]
    if not_ready:
        raise NotAllReady(not_ready)
