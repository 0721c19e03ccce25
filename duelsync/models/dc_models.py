from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


class RoomStatus(str, Enum):
    waiting = "waiting"
    playing = "playing"


class ChannelStatus(str, Enum):
    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"


class ChangeEvent(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ActionType(str, Enum):
    # member names equal their values so lookups by raw string are stable
    hero_move = "hero_move"
    send_enemy = "send_enemy"
    build_tower = "build_tower"
    build_trap = "build_trap"
    tower_upgrade = "tower_upgrade"
    tower_downgrade = "tower_downgrade"
    farm_upgrade = "farm_upgrade"
    resource_sync = "resource_sync"
    enemies_killed = "enemies_killed"
    full_sync = "full_sync"


class ChangePayload(BaseModel):
    """Row change delivered on a db-changes topic"""

    event_type: ChangeEvent
    table: str
    new: Optional[Dict[str, Any]] = None
    old: Optional[Dict[str, Any]] = None


class Envelope(BaseModel):
    """Message published on a channel topic"""

    type: Literal["broadcast", "presence", "db_change"]
    event: str
    payload: Dict[str, Any] = {}


# ============ Action payloads ============

class HeroMoveData(BaseModel):
    x: float
    y: float
    player_number: int


class SendEnemyData(BaseModel):
    enemy_type: str
    lane: Optional[int] = None


class BuildTowerData(BaseModel):
    tower_id: str
    tower_type: str
    x: float
    y: float


class BuildTrapData(BaseModel):
    trap_id: str
    trap_type: str
    x: float
    y: float


class TowerLevelData(BaseModel):
    tower_id: str
    level: int


class FarmUpgradeData(BaseModel):
    farm_id: str
    level: int
    player_number: int
    gold: int


class ResourceSyncData(BaseModel):
    player_number: int
    gold: int


class EnemiesKilledData(BaseModel):
    enemy_ids: List[str]
    source_id: Optional[str] = None


class FullSyncData(BaseModel):
    state: Dict[str, Any]


# ============ Actions (tagged by action_type) ============

class GameActionBase(BaseModel):
    action_id: Optional[str] = None
    room_id: str
    player_id: str
    sequence_number: int
    timestamp: datetime

    class Config:
        from_attributes = True


class HeroMoveAction(GameActionBase):
    action_type: Literal["hero_move"] = "hero_move"
    action_data: HeroMoveData


class SendEnemyAction(GameActionBase):
    action_type: Literal["send_enemy"] = "send_enemy"
    action_data: SendEnemyData


class BuildTowerAction(GameActionBase):
    action_type: Literal["build_tower"] = "build_tower"
    action_data: BuildTowerData


class BuildTrapAction(GameActionBase):
    action_type: Literal["build_trap"] = "build_trap"
    action_data: BuildTrapData


class TowerUpgradeAction(GameActionBase):
    action_type: Literal["tower_upgrade"] = "tower_upgrade"
    action_data: TowerLevelData


class TowerDowngradeAction(GameActionBase):
    action_type: Literal["tower_downgrade"] = "tower_downgrade"
    action_data: TowerLevelData


class FarmUpgradeAction(GameActionBase):
    action_type: Literal["farm_upgrade"] = "farm_upgrade"
    action_data: FarmUpgradeData


class ResourceSyncAction(GameActionBase):
    action_type: Literal["resource_sync"] = "resource_sync"
    action_data: ResourceSyncData


class EnemiesKilledAction(GameActionBase):
    action_type: Literal["enemies_killed"] = "enemies_killed"
    action_data: EnemiesKilledData


class FullSyncAction(GameActionBase):
    action_type: Literal["full_sync"] = "full_sync"
    action_data: FullSyncData


GameAction = Annotated[
    Union[
        HeroMoveAction,
        SendEnemyAction,
        BuildTowerAction,
        BuildTrapAction,
        TowerUpgradeAction,
        TowerDowngradeAction,
        FarmUpgradeAction,
        ResourceSyncAction,
        EnemiesKilledAction,
        FullSyncAction,
    ],
    Field(discriminator="action_type"),
]

game_action_adapter: TypeAdapter = TypeAdapter(GameAction)
