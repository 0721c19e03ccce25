"""Room lifecycle: create/join/ready/start, presence, heartbeat liveness and reconnection.

A manager holds at most one connection set at a time: the room channel, the
heartbeat job and the three db-changes subscriptions. ``connect_to_room``
tears the previous set down before building a new one, so repeated connects
(reconnection attempts included) never stack listeners.

Known race: ``start_game`` and ``leave_room`` read, check, then write in
separate store calls. Two clients acting at the same moment can both pass the
check.
"""
import asyncio
import logging
from datetime import datetime
from typing import Callable, List, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pydantic import ValidationError

from duelsync.channel import Channel, ChannelFactory
from duelsync.crud import Store, change_topic
from duelsync.domain.room_rules import (
    HEARTBEAT_INTERVAL_SEC,
    HEARTBEAT_TIMEOUT_SEC,
    MAX_PLAYERS,
    MAX_RECONNECT_ATTEMPTS,
    RECONNECT_BASE_DELAY_SEC,
    RECONNECT_MAX_DELAY_SEC,
    check_can_start,
    generate_room_code,
    is_heartbeat_stale,
    is_valid_room_code,
    reconnect_delay,
)
from duelsync.events import EventHub
from duelsync.exceptions import (
    AlreadyJoined,
    ConnectionLost,
    InvalidStateTransition,
    RoomFull,
    RoomNotFound,
    StoreError,
)
from duelsync.models.dc_models import ChangeEvent, ChangePayload, ChannelStatus, RoomStatus
from duelsync.models.schema_models import (
    CreateRoomResult,
    JoinRoomResult,
    PresenceRecord,
    RoomPlayerSchema,
    RoomSchema,
)
from duelsync.models.schemas import utc_now


class RoomLifecycleManager:
    EVENTS = [
        "presence_update",
        "player_joined",
        "player_disconnected",
        "game_action",
        "state_sync",
        "room_status_changed",
        "connection_lost",
    ]

    def __init__(
        self,
        store: Store,
        channel_factory: ChannelFactory,
        scheduler: Optional[AsyncIOScheduler] = None,
        heartbeat_interval: float = HEARTBEAT_INTERVAL_SEC,
        heartbeat_timeout: float = HEARTBEAT_TIMEOUT_SEC,
        max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS,
        reconnect_base_delay: float = RECONNECT_BASE_DELAY_SEC,
        reconnect_max_delay: float = RECONNECT_MAX_DELAY_SEC,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store: Store = store
        self.channel_factory: ChannelFactory = channel_factory
        self.owns_scheduler = scheduler is None
        self.scheduler: AsyncIOScheduler = scheduler or AsyncIOScheduler()
        self.heartbeat_interval = heartbeat_interval
        self.heartbeat_timeout = heartbeat_timeout
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_base_delay = reconnect_base_delay
        self.reconnect_max_delay = reconnect_max_delay
        self.clock = clock

        self.events = EventHub(self.EVENTS)
        self.channel: Optional[Channel] = None
        self.db_channels: List[Channel] = []
        self.heartbeat_job = None
        self.reconnect_attempts = 0
        self.reconnect_task: Optional[asyncio.Task] = None
        self.current_room_id: Optional[str] = None
        self.current_player_id: Optional[str] = None

    def subscribe(self, kind: str, handler: Callable) -> Callable[[], None]:
        """Listen to one of EVENTS; returns the unsubscribe handle"""
        return self.events.subscribe(kind, handler)

    # ============ Room operations ============

    async def create_room(self, player_id: str, username: str) -> CreateRoomResult:
        """Create a waiting room hosted by player_id and connect to it

        Args:
            player_id (str): Host player
            username (str): Display name of the host

        Raises:
            StoreError: The room or the host row could not be written

        Returns:
            CreateRoomResult: The room, its 5-letter code and the host's RoomPlayer
        """
        room_code = generate_room_code()
        result = await self.store.insert(
            "rooms",
            {
                "code": room_code,
                "host_id": player_id,
                "status": RoomStatus.waiting.value,
                "current_players": 1,
                "max_players": MAX_PLAYERS,
            },
        )
        if result.error:
            raise StoreError("rooms", "create", result.error) from result.error
        room = RoomSchema.model_validate(result.data)

        player_result = await self.store.insert(
            "room_players",
            {
                "room_id": room.room_id,
                "player_id": player_id,
                "player_number": 1,
                "username": username,
            },
        )
        if player_result.error:
            raise StoreError("room_players", "create", player_result.error) from player_result.error
        player = RoomPlayerSchema.model_validate(player_result.data)
        room.room_players = [player]

        logging.info(f"Created room {room.room_id} with code {room_code}")
        await self.connect_to_room(room.room_id, player_id)
        return CreateRoomResult(room=room, room_code=room_code, player=player)

    async def join_room(self, room_code: str, player_id: str, username: str) -> JoinRoomResult:
        """Join a waiting room by its code as player 2

        Raises:
            RoomNotFound: No waiting room has this code
            RoomFull: The room already holds max_players
            AlreadyJoined: player_id is already in the room
            StoreError: The join could not be written
        """
        if not is_valid_room_code(room_code):
            raise RoomNotFound(room_code)

        result = await self.store.select(
            "rooms",
            {"code": room_code, "status": RoomStatus.waiting.value},
            join=["room_players"],
            single=True,
        )
        if result.error or result.data is None:
            raise RoomNotFound(room_code)
        room = RoomSchema.model_validate(result.data)

        if room.current_players >= room.max_players:
            raise RoomFull(room_code)
        if any(p.player_id == player_id for p in room.room_players):
            raise AlreadyJoined(player_id)

        player_result = await self.store.insert(
            "room_players",
            {
                "room_id": room.room_id,
                "player_id": player_id,
                "player_number": 2,
                "username": username,
            },
        )
        if player_result.error:
            raise StoreError("room_players", "join", player_result.error) from player_result.error
        player = RoomPlayerSchema.model_validate(player_result.data)

        update_result = await self.store.update(
            "rooms",
            {"current_players": room.current_players + 1},
            {"room_id": room.room_id},
        )
        if update_result.error:
            raise StoreError("rooms", "update", update_result.error) from update_result.error
        room.current_players += 1
        room.room_players.append(player)

        logging.info(f"Player {player_id} joined room {room.room_id}")
        await self.connect_to_room(room.room_id, player_id)
        return JoinRoomResult(room=room, player=player)

    async def set_player_ready(
        self, room_id: str, player_id: str, ready: bool
    ) -> List[RoomPlayerSchema]:
        result = await self.store.update(
            "room_players",
            {"is_ready": ready},
            {"room_id": room_id, "player_id": player_id},
        )
        if result.error:
            raise StoreError("room_players", "update", result.error) from result.error
        logging.info(f"Player {player_id} ready={ready} in room {room_id}")
        return [RoomPlayerSchema.model_validate(row) for row in result.data]

    async def start_game(self, room_id: str, host_id: str) -> RoomSchema:
        """Move the room from waiting to playing

        Raises:
            RoomNotFound: The room does not exist
            NotHost: host_id is not the room's host
            NotEnoughPlayers: The room does not hold exactly 2 players
            NotAllReady: Somebody has not toggled ready
            InvalidStateTransition: The room is not waiting any more
        """
        room_result = await self.store.select("rooms", {"room_id": room_id}, single=True)
        if room_result.error:
            raise RoomNotFound(room_id)
        room = RoomSchema.model_validate(room_result.data)

        players_result = await self.store.select("room_players", {"room_id": room_id})
        if players_result.error:
            raise StoreError("room_players", "read", players_result.error) from players_result.error
        players = [RoomPlayerSchema.model_validate(row) for row in players_result.data]

        check_can_start(room.host_id, host_id, players)
        if room.status != RoomStatus.waiting:
            raise InvalidStateTransition(f"Room {room_id} is already {room.status.value}")

        update_result = await self.store.update(
            "rooms",
            {"status": RoomStatus.playing.value, "started_at": self.clock()},
            {"room_id": room_id},
        )
        if update_result.error:
            raise StoreError("rooms", "update", update_result.error) from update_result.error
        if not update_result.data:
            raise RoomNotFound(room_id)

        logging.info(f"Room {room_id} started by {host_id}")
        started = RoomSchema.model_validate(update_result.data[0])
        started.room_players = players
        return started

    async def get_room_details(self, room_id: str) -> RoomSchema:
        result = await self.store.select(
            "rooms", {"room_id": room_id}, join=["room_players"], single=True
        )
        if isinstance(result.error, LookupError):
            raise RoomNotFound(room_id)
        if result.error:
            raise StoreError("rooms", "read", result.error) from result.error
        return RoomSchema.model_validate(result.data)

    async def leave_room(self, room_id: str, player_id: str) -> None:
        """Leave the room and drop the connection set

        Rows are only touched while the room is still waiting; once playing,
        a departure is signaled through presence and heartbeats instead.
        """
        room_result = await self.store.select("rooms", {"room_id": room_id}, single=True)
        if room_result.ok and room_result.data["status"] == RoomStatus.waiting.value:
            deleted = await self.store.delete(
                "room_players", {"room_id": room_id, "player_id": player_id}
            )
            if deleted.error:
                logging.error(f"Failed to remove {player_id} from room {room_id}: {deleted.error}")
            elif deleted.data:
                current = await self.store.select("rooms", {"room_id": room_id}, single=True)
                if current.ok:
                    await self.store.update(
                        "rooms",
                        {"current_players": max(current.data["current_players"] - 1, 0)},
                        {"room_id": room_id},
                    )
                logging.info(f"Player {player_id} left room {room_id}")

        await self._cleanup()

    async def disconnect(self) -> None:
        """Leave the current room (if any) and stop every timer"""
        if self.reconnect_task is not None and self.reconnect_task is not asyncio.current_task():
            self.reconnect_task.cancel()
        self.reconnect_task = None

        if self.current_room_id and self.current_player_id:
            await self.leave_room(self.current_room_id, self.current_player_id)
        await self._cleanup()
        self.current_room_id = None
        self.current_player_id = None

        if self.owns_scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    # ============ Connection ============

    async def connect_to_room(self, room_id: str, player_id: str) -> ChannelStatus:
        """(Re)build the connection set for room_id

        Returns:
            ChannelStatus: Status the room channel reported on subscribe
        """
        self.current_room_id = room_id
        self.current_player_id = player_id

        await self._cleanup()

        channel = self.channel_factory(f"room:{room_id}", player_id)
        self.channel = channel
        (
            channel.on("presence", "sync", self._handle_presence_sync)
            .on("presence", "join", self._handle_presence_join)
            .on("presence", "leave", self._handle_presence_leave)
            .on("broadcast", "game_action", self._handle_game_action)
            .on("broadcast", "sync_state", self._handle_state_sync)
        )

        async def on_status(status: ChannelStatus) -> None:
            await self._handle_channel_status(channel, room_id, player_id, status)

        status = await channel.subscribe(on_status)
        await self._setup_database_listeners(room_id)
        return status

    async def _handle_channel_status(
        self, channel: Channel, room_id: str, player_id: str, status: ChannelStatus
    ) -> None:
        if channel is not self.channel:
            return

        if status == ChannelStatus.SUBSCRIBED:
            logging.info(f"Subscribed to room:{room_id} as {player_id}")
            self.reconnect_attempts = 0
            await channel.track(
                {"player_id": player_id, "online_at": self.clock().isoformat()}
            )
            self._start_heartbeat(room_id, player_id)
        elif status in (ChannelStatus.CHANNEL_ERROR, ChannelStatus.TIMED_OUT):
            logging.error(f"Channel room:{room_id} reported {status.value}")
            self._schedule_reconnection(room_id, player_id)

    def _schedule_reconnection(self, room_id: str, player_id: str) -> None:
        # a running reconnection loop observes the status itself
        if self.reconnect_task is not None and not self.reconnect_task.done():
            return
        self.reconnect_task = asyncio.create_task(self._reconnect(room_id, player_id))

    async def _reconnect(self, room_id: str, player_id: str) -> None:
        while self.reconnect_attempts < self.max_reconnect_attempts:
            self.reconnect_attempts += 1
            delay = reconnect_delay(
                self.reconnect_attempts, self.reconnect_base_delay, self.reconnect_max_delay
            )
            logging.warning(
                f"Reconnecting to room {room_id} in {delay}s "
                f"(attempt {self.reconnect_attempts}/{self.max_reconnect_attempts})"
            )
            await asyncio.sleep(delay)

            try:
                status = await self.connect_to_room(room_id, player_id)
            except Exception as e:
                logging.error(f"Reconnection failed: {e}")
                continue
            if status == ChannelStatus.SUBSCRIBED:
                return

        logging.error(f"Max reconnection attempts reached for room {room_id}")
        await self.events.emit(
            "connection_lost", ConnectionLost(room_id, self.reconnect_attempts)
        )

    async def _setup_database_listeners(self, room_id: str) -> None:
        listeners = [
            ("room_players", self._handle_player_change),
            ("actions", self._handle_new_action),
            ("rooms", self._handle_room_update),
        ]
        for table, handler in listeners:
            db_channel = self.channel_factory(change_topic(table, room_id), None)
            db_channel.on("db_change", "*", handler)
            status = await db_channel.subscribe()
            if status != ChannelStatus.SUBSCRIBED:
                logging.error(f"Listening for {table} changes failed: {status.value}")
            self.db_channels.append(db_channel)

    # ============ Heartbeat ============

    def _start_heartbeat(self, room_id: str, player_id: str) -> None:
        self._stop_heartbeat()
        if not self.scheduler.running:
            self.scheduler.start()
        self.heartbeat_job = self.scheduler.add_job(
            self._send_heartbeat,
            "interval",
            seconds=self.heartbeat_interval,
            args=[room_id, player_id],
        )

    def _stop_heartbeat(self) -> None:
        if self.heartbeat_job is None:
            return
        try:
            self.heartbeat_job.remove()
        except JobLookupError:
            pass
        self.heartbeat_job = None

    async def _send_heartbeat(self, room_id: str, player_id: str) -> None:
        result = await self.store.update(
            "room_players",
            {"last_heartbeat": self.clock()},
            {"room_id": room_id, "player_id": player_id},
        )
        if result.error:
            logging.error(f"Heartbeat failed: {result.error}")

        if self.channel is not None:
            try:
                await self.channel.touch()
            except Exception as e:
                logging.error(f"Failed to renew presence: {e}")

    async def _cleanup(self) -> None:
        self._stop_heartbeat()

        if self.channel is not None:
            channel, self.channel = self.channel, None
            await channel.unsubscribe()

        for db_channel in self.db_channels:
            await db_channel.unsubscribe()
        self.db_channels = []

    # ============ Inbound events ============

    async def _handle_presence_sync(self, payload) -> None:
        if self.channel is None:
            return
        players = [
            PresenceRecord(player_id=p["player_id"], online_at=p["online_at"])
            for presences in self.channel.presence_state().values()
            for p in presences
        ]
        await self.events.emit("presence_update", players)

    async def _handle_presence_join(self, payload) -> None:
        logging.info(f"Player {payload.get('key')} is online")

    async def _handle_presence_leave(self, payload) -> None:
        player_id = payload.get("key")
        if player_id and player_id != self.current_player_id:
            await self._handle_player_disconnect(player_id)

    async def _handle_player_disconnect(self, player_id: str) -> None:
        await self.events.emit("player_disconnected", player_id)

    async def _handle_game_action(self, payload) -> None:
        await self.events.emit("game_action", payload)

    async def _handle_state_sync(self, payload) -> None:
        await self.events.emit("state_sync", payload)

    async def _handle_player_change(self, payload) -> None:
        try:
            change = ChangePayload.model_validate(payload)
        except ValidationError as e:
            logging.warning(f"Ignoring malformed player change: {e}")
            return

        if change.event_type == ChangeEvent.INSERT:
            await self.events.emit("player_joined", RoomPlayerSchema.model_validate(change.new))
        elif change.event_type == ChangeEvent.UPDATE:
            player = RoomPlayerSchema.model_validate(change.new)
            if is_heartbeat_stale(player.last_heartbeat, self.clock(), self.heartbeat_timeout):
                logging.warning(f"Player heartbeat stale: {player.player_id}")
                await self._handle_player_disconnect(player.player_id)
        elif change.event_type == ChangeEvent.DELETE:
            await self._handle_player_disconnect(change.old["player_id"])

    async def _handle_new_action(self, payload) -> None:
        change = ChangePayload.model_validate(payload)
        if change.event_type == ChangeEvent.INSERT:
            await self.events.emit("game_action", change.new)

    async def _handle_room_update(self, payload) -> None:
        change = ChangePayload.model_validate(payload)
        if change.event_type != ChangeEvent.UPDATE:
            return
        # current_players updates land here too
        if change.old and change.old.get("status") == change.new["status"]:
            return
        await self.events.emit("room_status_changed", RoomStatus(change.new["status"]))
