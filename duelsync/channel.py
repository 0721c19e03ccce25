import asyncio
import inspect
import json
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from pydantic import ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError

from duelsync.models.dc_models import ChannelStatus, Envelope

SUBSCRIBE_TIMEOUT = 10.0
READ_TIMEOUT = 1.0
PRESENCE_TTL = 10.0


class Channel(Protocol):
    name: str

    def on(self, kind: str, event: str, handler: Callable) -> "Channel": ...

    async def subscribe(self, callback: Optional[Callable] = None) -> ChannelStatus: ...

    async def send(self, event: str, payload: Dict[str, Any]) -> None: ...

    async def track(self, metadata: Dict[str, Any]) -> None: ...

    async def touch(self) -> None: ...

    def presence_state(self) -> Dict[str, List[Dict[str, Any]]]: ...

    async def unsubscribe(self) -> None: ...


ChannelFactory = Callable[[str, Optional[str]], Channel]


async def _call(handler: Callable, *args) -> None:
    result = handler(*args)
    if inspect.isawaitable(result):
        await result


class RedisChannel:
    """Channel over a Redis pub/sub topic.

    Every message on the topic is a JSON Envelope. Each presence entry is its
    own key ``presence:{topic}:{presence key}`` that expires after
    ``presence_ttl`` seconds unless ``touch`` renews it, so a client that dies
    without untracking drops out on its own. track/untrack publish a
    join/leave envelope and every subscriber re-reads the live keys before
    emitting ``sync``.
    """

    def __init__(
        self,
        redis: Redis,
        name: str,
        presence_key: Optional[str] = None,
        subscribe_timeout: float = SUBSCRIBE_TIMEOUT,
        presence_ttl: float = PRESENCE_TTL,
    ):
        self.redis: Redis = redis
        self.name: str = name
        self.presence_key: Optional[str] = presence_key
        self.subscribe_timeout: float = subscribe_timeout
        self.presence_ttl: float = presence_ttl
        self.status: ChannelStatus = ChannelStatus.CLOSED
        self.handlers: Dict[Tuple[str, str], List[Callable]] = defaultdict(list)
        self.pubsub = None
        self.reader_task: Optional[asyncio.Task] = None
        self.status_callback: Optional[Callable] = None
        self.tracked = False
        self.metadata: Optional[Dict[str, Any]] = None
        self._presence: Dict[str, List[Dict[str, Any]]] = {}

    @property
    def presence_prefix(self) -> str:
        return f"presence:{self.name}:"

    @property
    def presence_entry(self) -> str:
        return f"{self.presence_prefix}{self.presence_key}"

    def on(self, kind: str, event: str, handler: Callable) -> "RedisChannel":
        """Register a handler; kind is presence, broadcast or db_change, event may be "*" """
        self.handlers[(kind, event)].append(handler)
        return self

    async def subscribe(self, callback: Optional[Callable] = None) -> ChannelStatus:
        """Subscribe to the topic and report the resulting status

        Args:
            callback (Callable, optional): Receives this and every later status change

        Returns:
            ChannelStatus: SUBSCRIBED, TIMED_OUT or CHANNEL_ERROR
        """
        self.status_callback = callback
        self.pubsub = self.redis.pubsub()
        try:
            await asyncio.wait_for(
                self.pubsub.subscribe(self.name), timeout=self.subscribe_timeout
            )
            await self._refresh_presence()
        except asyncio.TimeoutError:
            logging.error(f"Subscribing to {self.name} timed out")
            return await self._set_status(ChannelStatus.TIMED_OUT)
        except RedisError as e:
            logging.error(f"Failed to subscribe to {self.name}: {e}")
            return await self._set_status(ChannelStatus.CHANNEL_ERROR)

        self.reader_task = asyncio.create_task(self._read_loop())
        return await self._set_status(ChannelStatus.SUBSCRIBED)

    async def send(self, event: str, payload: Dict[str, Any]) -> None:
        """Broadcast a payload to every subscriber of the topic, this one included"""
        await self._publish(Envelope(type="broadcast", event=event, payload=payload))

    async def track(self, metadata: Dict[str, Any]) -> None:
        """Announce this client's presence under its presence key"""
        if self.presence_key is None:
            raise ValueError(f"Channel {self.name} has no presence key")
        self.metadata = metadata
        await self._write_presence()
        self.tracked = True
        await self._publish(
            Envelope(
                type="presence",
                event="join",
                payload={"key": self.presence_key, "presences": [metadata]},
            )
        )

    async def touch(self) -> None:
        """Renew the expiry of this client's presence entry"""
        if self.tracked:
            await self._write_presence()

    async def _write_presence(self) -> None:
        await self.redis.set(
            self.presence_entry,
            json.dumps(self.metadata),
            px=int(self.presence_ttl * 1000),
        )

    async def untrack(self) -> None:
        if not self.tracked:
            return
        self.tracked = False
        await self.redis.delete(self.presence_entry)
        await self._publish(
            Envelope(
                type="presence",
                event="leave",
                payload={"key": self.presence_key, "presences": []},
            )
        )

    def presence_state(self) -> Dict[str, List[Dict[str, Any]]]:
        return dict(self._presence)

    async def unsubscribe(self) -> None:
        """Leave presence, stop reading and drop the subscription

        The status callback is detached first so no status reaches a
        consumer that already tore this channel down.
        """
        self.status_callback = None
        try:
            await self.untrack()
        except RedisError as e:
            logging.error(f"Failed to untrack presence on {self.name}: {e}")

        if self.reader_task is not None:
            self.reader_task.cancel()
            try:
                await self.reader_task
            except asyncio.CancelledError:
                pass
            self.reader_task = None

        if self.pubsub is not None:
            try:
                await self.pubsub.unsubscribe(self.name)
                await self.pubsub.aclose()
            except RedisError as e:
                logging.error(f"Failed to unsubscribe from {self.name}: {e}")
            self.pubsub = None
        await self._set_status(ChannelStatus.CLOSED)

    async def _set_status(self, status: ChannelStatus) -> ChannelStatus:
        self.status = status
        if self.status_callback is not None:
            await _call(self.status_callback, status)
        return status

    async def _publish(self, envelope: Envelope) -> None:
        await self.redis.publish(self.name, json.dumps(envelope.model_dump()))

    async def _refresh_presence(self) -> None:
        keys = [key async for key in self.redis.scan_iter(match=f"{self.presence_prefix}*")]
        values = await self.redis.mget(keys) if keys else []
        presence = {}
        for key, value in zip(keys, values):
            # expired between SCAN and MGET
            if value is None:
                continue
            if isinstance(key, bytes):
                key = key.decode()
            presence[key[len(self.presence_prefix):]] = [json.loads(value)]
        self._presence = presence

    async def _read_loop(self) -> None:
        try:
            while True:
                msg = await self.pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=READ_TIMEOUT
                )
                if msg and msg["type"] == "message":
                    await self.dispatch(msg["data"])
        except RedisError as e:
            logging.error(f"Reading from {self.name} failed: {e}")
            await self._set_status(ChannelStatus.CHANNEL_ERROR)

    async def dispatch(self, raw) -> None:
        """Route one raw message to the handlers registered for it"""
        try:
            envelope = Envelope.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as e:
            logging.warning(f"Dropping malformed message on {self.name}: {e}")
            return

        if envelope.type == "presence":
            await self._refresh_presence()
            await self._emit("presence", envelope.event, envelope.payload)
            await self._emit("presence", "sync", {})
        else:
            await self._emit(envelope.type, envelope.event, envelope.payload)

    async def _emit(self, kind: str, event: str, payload: Dict[str, Any]) -> None:
        for handler in self.handlers[(kind, event)] + self.handlers[(kind, "*")]:
            try:
                await _call(handler, payload)
            except Exception as e:
                logging.error(f"{kind}/{event} handler on {self.name} failed: {e}")


def redis_channel_factory(
    redis: Redis,
    subscribe_timeout: float = SUBSCRIBE_TIMEOUT,
    presence_ttl: float = PRESENCE_TTL,
) -> ChannelFactory:
    """Build a factory that opens RedisChannels on a shared client"""

    def factory(name: str, presence_key: Optional[str] = None) -> RedisChannel:
        return RedisChannel(redis, name, presence_key, subscribe_timeout, presence_ttl)

    return factory
