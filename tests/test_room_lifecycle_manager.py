"""Room lifecycle tests: real store on SQLite, channels on the fake broker."""
from datetime import timedelta

import pytest
from redis.exceptions import ConnectionError

from duelsync.crud import StoreResult
from duelsync.domain.room_rules import as_utc
from duelsync.exceptions import (
    AlreadyJoined,
    ConnectionLost,
    InvalidStateTransition,
    NotAllReady,
    NotEnoughPlayers,
    NotHost,
    RoomFull,
    RoomNotFound,
)
from duelsync.models.dc_models import ChannelStatus, RoomStatus
from duelsync.models.schemas import utc_now


async def ready_room(host, guest):
    created = await host.create_room("host", "Host")
    await guest.join_room(created.room_code, "guest", "Guest")
    room_id = created.room.room_id
    await host.set_player_ready(room_id, "host", True)
    await guest.set_player_ready(room_id, "guest", True)
    return room_id


class TestCreateAndJoin:
    @pytest.mark.asyncio
    async def test_create_room(self, make_manager, broker):
        host = make_manager()

        created = await host.create_room("host", "Host")

        assert len(created.room_code) == 5
        assert created.room.status == RoomStatus.waiting
        assert created.room.current_players == 1
        assert created.player.player_number == 1
        assert host.channel.name == f"room:{created.room.room_id}"
        assert broker.presence[host.channel.name]["host"]["player_id"] == "host"

    @pytest.mark.asyncio
    async def test_join_room(self, make_manager):
        host, guest = make_manager(), make_manager()
        created = await host.create_room("host", "Host")

        joined = await guest.join_room(created.room_code, "guest", "Guest")

        assert joined.player.player_number == 2
        assert joined.room.current_players == 2
        details = await host.get_room_details(created.room.room_id)
        assert [p.player_id for p in details.room_players] == ["host", "guest"]
        assert details.current_players == 2

    @pytest.mark.asyncio
    async def test_join_unknown_code(self, make_manager):
        with pytest.raises(RoomNotFound):
            await make_manager().join_room("QQQQQ", "guest", "Guest")

    @pytest.mark.asyncio
    async def test_malformed_code_never_reaches_the_store(self, make_manager, store, monkeypatch):
        lookups = []

        async def recording_select(*args, **kwargs):
            lookups.append(args)
            return StoreResult(error=LookupError("no rows"))

        monkeypatch.setattr(store, "select", recording_select)

        for code in ("abcde", "ABCD", "AB1DE"):
            with pytest.raises(RoomNotFound):
                await make_manager().join_room(code, "guest", "Guest")
        assert lookups == []

    @pytest.mark.asyncio
    async def test_third_player_is_rejected(self, make_manager):
        host, guest, third = make_manager(), make_manager(), make_manager()
        created = await host.create_room("host", "Host")
        await guest.join_room(created.room_code, "guest", "Guest")

        with pytest.raises(RoomFull) as exc_info:
            await third.join_room(created.room_code, "third", "Third")
        assert str(exc_info.value) == "Room is full"

    @pytest.mark.asyncio
    async def test_host_cannot_join_twice(self, make_manager):
        host = make_manager()
        created = await host.create_room("host", "Host")

        with pytest.raises(AlreadyJoined):
            await make_manager().join_room(created.room_code, "host", "Host")

    @pytest.mark.asyncio
    async def test_started_room_cannot_be_joined(self, make_manager):
        host, guest = make_manager(), make_manager()
        room_id = await ready_room(host, guest)
        details = await host.get_room_details(room_id)
        await host.start_game(room_id, "host")

        with pytest.raises(RoomNotFound):
            await make_manager().join_room(details.code, "late", "Late")

    @pytest.mark.asyncio
    async def test_guest_sees_player_joined_on_host(self, make_manager):
        host, guest = make_manager(), make_manager()
        joined = []
        host.subscribe("player_joined", joined.append)
        created = await host.create_room("host", "Host")

        await guest.join_room(created.room_code, "guest", "Guest")

        assert [p.player_id for p in joined] == ["guest"]


class TestStartGame:
    @pytest.mark.asyncio
    async def test_host_starts_ready_room(self, make_manager):
        host, guest = make_manager(), make_manager()
        statuses = []
        guest.subscribe("room_status_changed", statuses.append)
        room_id = await ready_room(host, guest)

        room = await host.start_game(room_id, "host")

        assert room.status == RoomStatus.playing
        assert room.started_at is not None
        assert statuses == [RoomStatus.playing]

    @pytest.mark.asyncio
    async def test_guest_cannot_start(self, make_manager):
        host, guest = make_manager(), make_manager()
        room_id = await ready_room(host, guest)

        with pytest.raises(NotHost) as exc_info:
            await guest.start_game(room_id, "guest")
        assert str(exc_info.value) == "Only host can start the game"

    @pytest.mark.asyncio
    async def test_needs_two_players(self, make_manager):
        host = make_manager()
        created = await host.create_room("host", "Host")
        await host.set_player_ready(created.room.room_id, "host", True)

        with pytest.raises(NotEnoughPlayers):
            await host.start_game(created.room.room_id, "host")

    @pytest.mark.asyncio
    async def test_needs_everyone_ready(self, make_manager):
        host, guest = make_manager(), make_manager()
        created = await host.create_room("host", "Host")
        await guest.join_room(created.room_code, "guest", "Guest")
        await host.set_player_ready(created.room.room_id, "host", True)

        with pytest.raises(NotAllReady):
            await host.start_game(created.room.room_id, "host")

    @pytest.mark.asyncio
    async def test_cannot_start_twice(self, make_manager):
        host, guest = make_manager(), make_manager()
        room_id = await ready_room(host, guest)
        await host.start_game(room_id, "host")

        with pytest.raises(InvalidStateTransition):
            await host.start_game(room_id, "host")

    @pytest.mark.asyncio
    async def test_ready_toggle_returns_rows(self, make_manager):
        host = make_manager()
        created = await host.create_room("host", "Host")

        rows = await host.set_player_ready(created.room.room_id, "host", True)

        assert [(r.player_id, r.is_ready) for r in rows] == [("host", True)]


class TestLeaveRoom:
    @pytest.mark.asyncio
    async def test_leaving_waiting_room_removes_player(self, make_manager):
        host, guest = make_manager(), make_manager()
        disconnected = []
        host.subscribe("player_disconnected", disconnected.append)
        created = await host.create_room("host", "Host")
        await guest.join_room(created.room_code, "guest", "Guest")

        await guest.leave_room(created.room.room_id, "guest")

        details = await host.get_room_details(created.room.room_id)
        assert [p.player_id for p in details.room_players] == ["host"]
        assert details.current_players == 1
        assert guest.channel is None
        assert "guest" in disconnected

    @pytest.mark.asyncio
    async def test_leaving_playing_room_keeps_rows(self, make_manager):
        host, guest = make_manager(), make_manager()
        room_id = await ready_room(host, guest)
        await host.start_game(room_id, "host")

        await guest.leave_room(room_id, "guest")

        details = await host.get_room_details(room_id)
        assert [p.player_id for p in details.room_players] == ["host", "guest"]
        assert details.current_players == 2

    @pytest.mark.asyncio
    async def test_unknown_room_details(self, make_manager):
        with pytest.raises(RoomNotFound):
            await make_manager().get_room_details("00000000-0000-0000-0000-000000000000")


class TestPresenceAndLiveness:
    @pytest.mark.asyncio
    async def test_presence_update_lists_both_players(self, make_manager):
        host, guest = make_manager(), make_manager()
        updates = []
        host.subscribe("presence_update", updates.append)
        created = await host.create_room("host", "Host")

        await guest.join_room(created.room_code, "guest", "Guest")

        assert sorted(p.player_id for p in updates[-1]) == ["guest", "host"]

    @pytest.mark.asyncio
    async def test_presence_leave_signals_disconnect(self, make_manager):
        host, guest = make_manager(), make_manager()
        disconnected = []
        host.subscribe("player_disconnected", disconnected.append)
        room_id = await ready_room(host, guest)
        await host.start_game(room_id, "host")

        await guest.disconnect()

        assert disconnected == ["guest"]

    @pytest.mark.asyncio
    async def test_stale_heartbeat_signals_disconnect(self, make_manager, store):
        host, guest = make_manager(), make_manager()
        disconnected = []
        host.subscribe("player_disconnected", disconnected.append)
        room_id = await ready_room(host, guest)

        await store.update(
            "room_players",
            {"last_heartbeat": utc_now() - timedelta(seconds=30)},
            {"room_id": room_id, "player_id": "guest"},
        )

        assert disconnected == ["guest"]

    @pytest.mark.asyncio
    async def test_fresh_heartbeat_is_quiet(self, make_manager):
        host, guest = make_manager(), make_manager()
        disconnected = []
        host.subscribe("player_disconnected", disconnected.append)
        room_id = await ready_room(host, guest)

        await guest._send_heartbeat(room_id, "guest")

        assert disconnected == []

    @pytest.mark.asyncio
    async def test_heartbeat_renews_presence(self, make_manager, broker):
        host = make_manager()
        created = await host.create_room("host", "Host")
        room_id = created.room.room_id

        await host._send_heartbeat(room_id, "host")
        await host._send_heartbeat(room_id, "host")

        assert broker.touches[f"room:{room_id}"] == 2

    @pytest.mark.asyncio
    async def test_failed_heartbeat_write_is_swallowed(self, make_manager, store, broker, monkeypatch):
        host = make_manager()
        created = await host.create_room("host", "Host")
        room_id = created.room.room_id
        working_update = store.update

        async def broken_update(table, values, filters):
            return StoreResult(error=RuntimeError("database is locked"))

        monkeypatch.setattr(store, "update", broken_update)
        await host._send_heartbeat(room_id, "host")
        assert broker.touches[f"room:{room_id}"] == 1

        monkeypatch.setattr(store, "update", working_update)
        later = utc_now() + timedelta(seconds=5)
        host.clock = lambda: later
        await host._send_heartbeat(room_id, "host")

        details = await host.get_room_details(room_id)
        assert as_utc(details.room_players[0].last_heartbeat) == later

    @pytest.mark.asyncio
    async def test_failed_presence_renewal_is_swallowed(self, make_manager, store, monkeypatch):
        host = make_manager()
        created = await host.create_room("host", "Host")
        room_id = created.room.room_id

        async def broken_touch():
            raise ConnectionError("connection reset")

        monkeypatch.setattr(host.channel, "touch", broken_touch)
        later = utc_now() + timedelta(seconds=5)
        host.clock = lambda: later

        await host._send_heartbeat(room_id, "host")

        details = await host.get_room_details(room_id)
        assert as_utc(details.room_players[0].last_heartbeat) == later

    @pytest.mark.asyncio
    async def test_heartbeat_job_scheduled_on_subscribe(self, make_manager):
        host = make_manager(heartbeat_interval=3.0)
        await host.create_room("host", "Host")

        assert host.heartbeat_job is not None
        assert host.heartbeat_job.trigger.interval == timedelta(seconds=3)


class TestConnection:
    @pytest.mark.asyncio
    async def test_reconnect_does_not_stack_listeners(self, make_manager, broker):
        host = make_manager()
        created = await host.create_room("host", "Host")
        room_id = created.room.room_id

        await host.connect_to_room(room_id, "host")
        await host.connect_to_room(room_id, "host")

        assert len(broker.subscribers[f"room:{room_id}"]) == 1
        for table in ("rooms", "room_players", "actions"):
            assert len(broker.subscribers[f"db-changes:{table}:{room_id}"]) == 1
        assert len(host.scheduler.get_jobs()) == 1

    @pytest.mark.asyncio
    async def test_reconnection_gives_up_after_five_attempts(self, make_manager, broker):
        host = make_manager()
        lost = []
        host.subscribe("connection_lost", lost.append)
        created = await host.create_room("host", "Host")
        room_name = f"room:{created.room.room_id}"

        broker.failing["room:"] = ChannelStatus.CHANNEL_ERROR
        await host.channel._set_status(ChannelStatus.CHANNEL_ERROR)
        await host.reconnect_task

        assert broker.subscribe_calls[room_name] == 6
        assert len(lost) == 1
        assert isinstance(lost[0], ConnectionLost)
        assert lost[0].attempts == 5

    @pytest.mark.asyncio
    async def test_timeout_is_retried_and_recovers(self, make_manager, broker):
        host = make_manager()
        lost = []
        host.subscribe("connection_lost", lost.append)
        created = await host.create_room("host", "Host")
        room_name = f"room:{created.room.room_id}"

        await host.channel._set_status(ChannelStatus.TIMED_OUT)
        await host.reconnect_task

        assert broker.subscribe_calls[room_name] == 2
        assert host.reconnect_attempts == 0
        assert host.channel.status == ChannelStatus.SUBSCRIBED
        assert lost == []

    @pytest.mark.asyncio
    async def test_status_of_replaced_channel_is_ignored(self, make_manager):
        host = make_manager()
        created = await host.create_room("host", "Host")
        old_channel = host.channel
        await host.connect_to_room(created.room.room_id, "host")

        await host._handle_channel_status(
            old_channel, created.room.room_id, "host", ChannelStatus.CHANNEL_ERROR
        )

        assert host.reconnect_task is None
