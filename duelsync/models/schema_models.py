from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from duelsync.models.dc_models import RoomStatus


class RoomPlayerSchema(BaseModel):
    room_player_id: str
    room_id: str
    player_id: str
    username: str
    player_number: int
    is_ready: bool = False
    health: int = 100
    last_heartbeat: Optional[datetime] = None

    class Config:
        from_attributes = True


class RoomSchema(BaseModel):
    room_id: str
    code: str
    host_id: str
    status: RoomStatus
    current_players: int
    max_players: int = 2
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    room_players: List[RoomPlayerSchema] = []

    class Config:
        from_attributes = True


class PresenceRecord(BaseModel):
    player_id: str
    online_at: str


class StateSnapshot(BaseModel):
    tick: int
    heroes: Dict[str, Any] = {}
    enemies: Dict[str, Any] = {}
    towers: Dict[str, Any] = {}
    buildings: Dict[str, Any] = {}
    player_id: Optional[str] = None


class CreateRoomResult(BaseModel):
    room: RoomSchema
    room_code: str
    player: RoomPlayerSchema


class JoinRoomResult(BaseModel):
    room: RoomSchema
    player: RoomPlayerSchema
