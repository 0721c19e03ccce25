import logging
from collections import deque
from datetime import datetime
from typing import Any, Callable, Deque, Dict, Optional, Union

from pydantic import BaseModel, ValidationError

from duelsync.channel import ChannelFactory
from duelsync.crud import Store
from duelsync.domain.action_rules import ACTION_EVENTS, should_persist
from duelsync.events import EventHub
from duelsync.models.dc_models import ActionType, GameAction, game_action_adapter
from duelsync.models.schemas import utc_now

ACTION_QUEUE_LIMIT = 256


class ActionChannel:
    """Relays gameplay actions for one player in one room.

    Every action is broadcast on the room channel. Actions outside the
    ephemeral set are also written to the durable action log. Sequence
    numbers start at 1 for each instance and are carried for diagnostics only:
    inbound actions are neither reordered nor deduplicated by them.
    """

    def __init__(
        self,
        store: Store,
        channel_factory: ChannelFactory,
        room_id: str,
        player_id: str,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store: Store = store
        self.room_id: str = room_id
        self.player_id: str = player_id
        self.clock = clock
        self.channel = channel_factory(f"room:{room_id}", None)
        self.sequence_number: int = 0
        self.action_queue: Deque[GameAction] = deque(maxlen=ACTION_QUEUE_LIMIT)
        self.events = EventHub(list(ACTION_EVENTS.values()))

    def subscribe(self, event: str, handler: Callable) -> Callable[[], None]:
        """Listen to the application event of one action type, e.g. "tower_built" """
        return self.events.subscribe(event, handler)

    async def send_action(
        self, action_type: Union[ActionType, str], action_data: Union[BaseModel, Dict[str, Any]]
    ) -> GameAction:
        """Stamp, broadcast and (unless ephemeral) persist one action

        Args:
            action_type (ActionType | str): Tag of the action
            action_data (BaseModel | dict): Payload matching the tag

        Raises:
            ValueError: Unknown action type, or a payload that does not match it

        Returns:
            GameAction: The stamped action as it was sent
        """
        if isinstance(action_data, BaseModel):
            action_data = action_data.model_dump()

        action = game_action_adapter.validate_python(
            {
                "room_id": self.room_id,
                "player_id": self.player_id,
                "action_type": ActionType(action_type).value,
                "action_data": action_data,
                "sequence_number": self.sequence_number + 1,
                "timestamp": self.clock(),
            }
        )
        self.sequence_number = action.sequence_number
        self.action_queue.append(action)

        try:
            await self.channel.send("game_action", action.model_dump(mode="json"))
        except Exception as e:
            logging.error(f"Failed to broadcast {action.action_type}: {e}")

        if should_persist(action.action_type):
            result = await self.store.insert(
                "actions",
                {
                    "room_id": self.room_id,
                    "player_id": self.player_id,
                    "action_type": action.action_type,
                    "action_data": action.action_data.model_dump(mode="json"),
                    "sequence_number": action.sequence_number,
                    "timestamp": action.timestamp,
                },
            )
            if result.error:
                logging.error(f"Failed to log {action.action_type} #{action.sequence_number}: {result.error}")
            else:
                action.action_id = result.data["action_id"]

        return action

    async def dispatch(self, payload: Union[GameAction, Dict[str, Any]]) -> Optional[GameAction]:
        """Route an inbound action (broadcast or persisted insert) to its application event

        Own actions and unknown action types are dropped.

        Returns:
            GameAction | None: The routed action, None when dropped
        """
        if isinstance(payload, dict):
            if payload.get("player_id") == self.player_id:
                return None
            try:
                action = game_action_adapter.validate_python(payload)
            except ValidationError as e:
                logging.warning(f"Ignoring action {payload.get('action_type')!r}: {e.error_count()} errors")
                return None
        else:
            action = payload
            if action.player_id == self.player_id:
                return None

        await self.events.emit(ACTION_EVENTS[ActionType(action.action_type)], action)
        return action
