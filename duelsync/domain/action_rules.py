"""Action delivery rules.

Persistence cost is paid only for actions whose history must be auditable or
replay-reconstructable; the ephemeral set is live state that the next update
supersedes.
"""
from typing import Dict

from duelsync.models.dc_models import ActionType

EPHEMERAL_ACTION_TYPES = frozenset(
    {
        ActionType.hero_move,
        ActionType.full_sync,
        ActionType.enemies_killed,
        ActionType.farm_upgrade,
        ActionType.resource_sync,
    }
)

# Application event emitted for each inbound action type.
ACTION_EVENTS: Dict[ActionType, str] = {
    ActionType.hero_move: "hero_moved",
    ActionType.send_enemy: "enemy_spawn_requested",
    ActionType.build_tower: "tower_built",
    ActionType.build_trap: "trap_built",
    ActionType.tower_upgrade: "tower_upgraded",
    ActionType.tower_downgrade: "tower_downgraded",
    ActionType.farm_upgrade: "farm_upgraded",
    ActionType.resource_sync: "resources_synced",
    ActionType.enemies_killed: "enemies_killed",
    ActionType.full_sync: "full_state_synced",
}

_unrouted = set(ActionType) - set(ACTION_EVENTS)
if _unrouted:
    raise RuntimeError(f"Action types without an inbound route: {sorted(_unrouted)}")


def should_persist(action_type: str) -> bool:
    """Whether an action of this type is written to the durable action log"""
    return ActionType(action_type) not in EPHEMERAL_ACTION_TYPES
