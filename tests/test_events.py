import pytest

from duelsync.events import EventHub


class TestEventHub:
    @pytest.mark.asyncio
    async def test_emit_reaches_sync_and_async_handlers(self):
        hub = EventHub(["ping"])
        received = []

        async def on_async(value):
            received.append(("async", value))

        hub.subscribe("ping", lambda value: received.append(("sync", value)))
        hub.subscribe("ping", on_async)
        await hub.emit("ping", 1)

        assert received == [("sync", 1), ("async", 1)]

    @pytest.mark.asyncio
    async def test_unsubscribe_removes_only_that_handler(self):
        hub = EventHub(["ping"])
        first, second = [], []
        unsubscribe = hub.subscribe("ping", first.append)
        hub.subscribe("ping", second.append)

        unsubscribe()
        unsubscribe()
        await hub.emit("ping", "x")

        assert first == []
        assert second == ["x"]
        assert hub.count("ping") == 1

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_delivery(self):
        hub = EventHub(["ping"])
        received = []

        def boom(value):
            raise RuntimeError("boom")

        hub.subscribe("ping", boom)
        hub.subscribe("ping", received.append)
        await hub.emit("ping", 2)

        assert received == [2]

    def test_unknown_kind_is_rejected(self):
        hub = EventHub(["ping"])
        with pytest.raises(ValueError):
            hub.subscribe("pong", print)
