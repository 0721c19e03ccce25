import inspect
import logging
import time
from typing import Any, Callable, Dict, Optional, Union

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from duelsync.channel import ChannelFactory
from duelsync.crud import Store
from duelsync.domain.room_rules import as_utc
from duelsync.models.dc_models import GameAction
from duelsync.models.schema_models import StateSnapshot

SYNC_INTERVAL_SEC = 1.0
SNAPSHOT_CATEGORIES = ("heroes", "enemies", "towers", "buildings")


def current_tick() -> int:
    """Wall-clock milliseconds"""
    return int(time.time() * 1000)


class StateReconciler:
    """Periodic full-state snapshots, newest tick wins.

    The watermark ``last_sync_tick`` only moves forward: it is raised by every
    snapshot this client sends, every remote snapshot it applies and, through
    ``advance_watermark``, by finer-grained updates that already reached a
    later tick. A snapshot at or below the watermark is discarded.
    """

    def __init__(
        self,
        store: Store,
        channel_factory: ChannelFactory,
        room_id: str,
        player_id: Optional[str] = None,
        state_provider: Optional[Callable[[], Dict[str, Any]]] = None,
        correction: Optional[Callable[[StateSnapshot, Any], Any]] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
        interval: float = SYNC_INTERVAL_SEC,
        tick_clock: Callable[[], int] = current_tick,
    ):
        self.store: Store = store
        self.room_id: str = room_id
        self.player_id: Optional[str] = player_id
        self.state_provider = state_provider
        self.correction = correction
        self.owns_scheduler = scheduler is None
        self.scheduler: AsyncIOScheduler = scheduler or AsyncIOScheduler()
        self.interval: float = interval
        self.tick_clock = tick_clock
        self.channel = channel_factory(f"room:{room_id}", None)
        self.last_sync_tick: int = 0
        self.sync_job = None

    def start(self) -> None:
        """Begin sending a snapshot every interval seconds"""
        self.stop()
        if not self.scheduler.running:
            self.scheduler.start()
        self.sync_job = self.scheduler.add_job(
            self.sync_state, "interval", seconds=self.interval
        )

    def stop(self) -> None:
        if self.sync_job is None:
            return
        try:
            self.sync_job.remove()
        except JobLookupError:
            pass
        self.sync_job = None

    def shutdown(self) -> None:
        self.stop()
        if self.owns_scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    def capture(self) -> StateSnapshot:
        state = self.state_provider() if self.state_provider else {}
        return StateSnapshot(
            tick=self.tick_clock(),
            player_id=self.player_id,
            **{category: state.get(category, {}) for category in SNAPSHOT_CATEGORIES},
        )

    async def sync_state(self) -> StateSnapshot:
        """Broadcast and persist a snapshot of the local state

        Both deliveries are best-effort: failures are logged, never raised.
        The watermark moves before the first await, so the echo of this
        snapshot is already stale when it comes back.
        """
        snapshot = self.capture()
        self.advance_watermark(snapshot.tick)
        payload = snapshot.model_dump(mode="json")

        try:
            await self.channel.send("sync_state", payload)
        except Exception as e:
            logging.error(f"Failed to broadcast snapshot {snapshot.tick}: {e}")

        result = await self.store.insert(
            "states",
            {"room_id": self.room_id, "game_tick": snapshot.tick, "state_data": payload},
        )
        if result.error:
            logging.error(f"Failed to persist snapshot {snapshot.tick}: {result.error}")
        return snapshot

    def advance_watermark(self, tick: int) -> None:
        self.last_sync_tick = max(self.last_sync_tick, tick)

    def observe_action(self, action: GameAction) -> None:
        """Raise the watermark to an applied action's timestamp"""
        self.advance_watermark(int(as_utc(action.timestamp).timestamp() * 1000))

    async def reconcile_state(
        self, received: Union[StateSnapshot, Dict[str, Any]], local_state: Any = None
    ) -> bool:
        """Apply a received snapshot if it is newer than the watermark

        Args:
            received (StateSnapshot | dict): Snapshot from the other client
            local_state (Any, optional): Handed to the correction hook;
                defaults to the current state_provider output

        Returns:
            bool: True if the correction ran, False if the snapshot was stale
        """
        snapshot = (
            received
            if isinstance(received, StateSnapshot)
            else StateSnapshot.model_validate(received)
        )
        if self.player_id is not None and snapshot.player_id == self.player_id:
            return False
        if snapshot.tick <= self.last_sync_tick:
            logging.debug(f"Discarding stale snapshot {snapshot.tick} <= {self.last_sync_tick}")
            return False

        if local_state is None and self.state_provider is not None:
            local_state = self.state_provider()
        await self.apply_state_corrections(snapshot, local_state)
        self.last_sync_tick = snapshot.tick
        return True

    async def apply_state_corrections(self, snapshot: StateSnapshot, local_state: Any) -> None:
        # Interpolation toward the received values is up to the correction hook.
        if self.correction is None:
            return
        result = self.correction(snapshot, local_state)
        if inspect.isawaitable(result):
            await result
