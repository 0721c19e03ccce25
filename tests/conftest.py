"""Shared fixtures: an in-process broker standing in for Redis pub/sub and a
real SqlAlchemyStore on in-memory SQLite."""
import json
from collections import defaultdict

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from duelsync.channel import RedisChannel
from duelsync.crud import SqlAlchemyStore, create_tables
from duelsync.models.dc_models import ChannelStatus, Envelope
from duelsync.room_lifecycle_manager import RoomLifecycleManager


class FakeChannel(RedisChannel):
    """RedisChannel whose transport is a FakeBroker"""

    def __init__(self, broker, name, presence_key=None):
        super().__init__(None, name, presence_key)
        self.broker = broker

    async def subscribe(self, callback=None):
        self.status_callback = callback
        self.broker.subscribe_calls[self.name] += 1
        status = self.broker.next_status(self.name)
        if status == ChannelStatus.SUBSCRIBED:
            self.broker.subscribers[self.name].append(self)
            await self._refresh_presence()
        return await self._set_status(status)

    async def track(self, metadata):
        self.broker.presence[self.name][self.presence_key] = metadata
        self.tracked = True
        await self._publish(
            Envelope(
                type="presence",
                event="join",
                payload={"key": self.presence_key, "presences": [metadata]},
            )
        )

    async def touch(self):
        if self.tracked:
            self.broker.touches[self.name] += 1

    async def untrack(self):
        if not self.tracked:
            return
        self.tracked = False
        self.broker.presence[self.name].pop(self.presence_key, None)
        await self._publish(
            Envelope(
                type="presence",
                event="leave",
                payload={"key": self.presence_key, "presences": []},
            )
        )

    async def unsubscribe(self):
        self.status_callback = None
        await self.untrack()
        if self in self.broker.subscribers[self.name]:
            self.broker.subscribers[self.name].remove(self)
        await self._set_status(ChannelStatus.CLOSED)

    async def _publish(self, envelope):
        await self.broker.publish(self.name, json.dumps(envelope.model_dump()))

    async def _refresh_presence(self):
        self._presence = {
            key: [metadata] for key, metadata in self.broker.presence[self.name].items()
        }


class FakeBroker:
    """Delivers every published message synchronously to the topic's subscribers"""

    def __init__(self):
        self.subscribers = defaultdict(list)
        self.presence = defaultdict(dict)
        self.published = []
        self.channels = []
        self.subscribe_calls = defaultdict(int)
        self.touches = defaultdict(int)
        # topic prefix -> status reported on subscribe
        self.failing = {}

    def factory(self, name, presence_key=None):
        channel = FakeChannel(self, name, presence_key)
        self.channels.append(channel)
        return channel

    def next_status(self, name):
        for prefix, status in self.failing.items():
            if name.startswith(prefix):
                return status
        return ChannelStatus.SUBSCRIBED

    def channels_named(self, name):
        return [c for c in self.channels if c.name == name]

    def published_on(self, topic):
        return [message for t, message in self.published if t == topic]

    async def publish(self, topic, message):
        self.published.append((topic, json.loads(message)))
        for channel in list(self.subscribers[topic]):
            await channel.dispatch(message)


@pytest.fixture
def broker():
    return FakeBroker()


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def Session(engine):
    return async_sessionmaker(autocommit=False, class_=AsyncSession, autoflush=True, bind=engine)


@pytest.fixture
def store(Session, broker):
    return SqlAlchemyStore(Session, publisher=broker)


@pytest_asyncio.fixture
async def make_manager(store, broker):
    """Build managers with instant reconnection and a heartbeat that never fires on its own"""
    managers = []

    def make(**kwargs):
        options = {
            "heartbeat_interval": 60.0,
            "reconnect_base_delay": 0.0,
            "reconnect_max_delay": 0.0,
        }
        options.update(kwargs)
        manager = RoomLifecycleManager(store, broker.factory, **options)
        managers.append(manager)
        return manager

    yield make
    for manager in managers:
        await manager.disconnect()
