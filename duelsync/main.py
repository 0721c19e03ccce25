import argparse
import asyncio
import logging

from redis.asyncio import Redis

from duelsync.action_channel import ActionChannel
from duelsync.channel import redis_channel_factory
from duelsync.crud import SqlAlchemyStore, create_tables
from duelsync.db import Session, engine
from duelsync.load_secrets import (
    heartbeat_interval,
    heartbeat_timeout,
    max_reconnect_attempts,
    redis_host,
    redis_port,
    sync_interval,
)
from duelsync.models.dc_models import ActionType, BuildTowerData, HeroMoveData
from duelsync.room_lifecycle_manager import RoomLifecycleManager
from duelsync.state_reconciler import StateReconciler

logging.basicConfig(level=logging.INFO)


def get_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Two-client room session check")
    parser.add_argument("--host-id", type=str, default="host-player", help="Host player id")
    parser.add_argument("--guest-id", type=str, default="guest-player", help="Guest player id")
    parser.add_argument("--seconds", type=float, default=5.0, help="How long to keep syncing")
    return parser


def build_client(store, channel_factory, room_id: str, player_id: str, manager: RoomLifecycleManager):
    """Wire an ActionChannel and a StateReconciler to the manager's inbound events"""
    positions = {}

    def state_provider():
        return {"heroes": dict(positions)}

    def on_hero_moved(action):
        positions[action.player_id] = {"x": action.action_data.x, "y": action.action_data.y}
        logging.info(f"[{player_id}] hero of {action.player_id} at {positions[action.player_id]}")

    def on_tower_built(action):
        logging.info(f"[{player_id}] tower {action.action_data.tower_id} built by {action.player_id}")

    def correction(snapshot, local_state):
        positions.update(snapshot.heroes)
        logging.info(f"[{player_id}] applied snapshot {snapshot.tick} from {snapshot.player_id}")

    actions = ActionChannel(store, channel_factory, room_id, player_id)
    reconciler = StateReconciler(
        store,
        channel_factory,
        room_id,
        player_id,
        state_provider=state_provider,
        correction=correction,
        scheduler=manager.scheduler,
        interval=sync_interval,
    )

    actions.subscribe("hero_moved", on_hero_moved)
    actions.subscribe("hero_moved", reconciler.observe_action)
    actions.subscribe("tower_built", on_tower_built)
    manager.subscribe("game_action", actions.dispatch)
    manager.subscribe("state_sync", reconciler.reconcile_state)
    return actions, reconciler


async def main(host_id: str, guest_id: str, seconds: float):
    redis = Redis(host=redis_host, port=redis_port)
    await create_tables(engine)
    store = SqlAlchemyStore(Session, publisher=redis)
    channel_factory = redis_channel_factory(redis)

    def new_manager() -> RoomLifecycleManager:
        return RoomLifecycleManager(
            store,
            channel_factory,
            heartbeat_interval=heartbeat_interval,
            heartbeat_timeout=heartbeat_timeout,
            max_reconnect_attempts=max_reconnect_attempts,
        )

    host = new_manager()
    guest = new_manager()
    for name, manager in (("host", host), ("guest", guest)):
        manager.subscribe("presence_update", lambda players, name=name: logging.info(f"[{name}] online: {[p.player_id for p in players]}"))
        manager.subscribe("player_disconnected", lambda player_id, name=name: logging.warning(f"[{name}] {player_id} disconnected"))
        manager.subscribe("connection_lost", lambda error, name=name: logging.error(f"[{name}] {error}"))

    reconcilers = []
    try:
        created = await host.create_room(host_id, "Host")
        room_id = created.room.room_id
        await guest.join_room(created.room_code, guest_id, "Guest")

        await host.set_player_ready(room_id, host_id, True)
        await guest.set_player_ready(room_id, guest_id, True)
        room = await host.start_game(room_id, host_id)
        print(room.room_id, room.code, room.status.value, [p.username for p in room.room_players])

        host_actions, host_reconciler = build_client(store, channel_factory, room_id, host_id, host)
        guest_actions, guest_reconciler = build_client(store, channel_factory, room_id, guest_id, guest)
        reconcilers = [host_reconciler, guest_reconciler]

        await host_actions.send_action(ActionType.hero_move, HeroMoveData(x=1.0, y=2.0, player_number=1))
        await guest_actions.send_action(
            ActionType.build_tower, BuildTowerData(tower_id="t1", tower_type="arrow", x=4.0, y=4.0)
        )
        for reconciler in reconcilers:
            reconciler.start()
        await asyncio.sleep(seconds)
    finally:
        for reconciler in reconcilers:
            reconciler.stop()
        await guest.disconnect()
        await host.disconnect()
        await redis.aclose()
        await engine.dispose()


if __name__ == "__main__":
    parser = get_parser()
    args = parser.parse_args()
    asyncio.run(main(args.host_id, args.guest_id, args.seconds))
