"""Tests for the publish/subscribe channels."""

import pytest

from ckg.events import EventBus, EventChannel
from ckg.models import FileChange, IndexProgress


class TestEventChannel:
    @pytest.mark.asyncio
    async def test_sync_and_async_subscribers_receive_events(self):
        channel = EventChannel("test")
        seen_sync, seen_async = [], []

        async def on_async(event):
            seen_async.append(event)

        channel.subscribe(seen_sync.append)
        channel.subscribe(on_async)
        await channel.publish("hello")
        assert seen_sync == ["hello"]
        assert seen_async == ["hello"]

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        channel = EventChannel("test")
        seen = []
        unsubscribe = channel.subscribe(seen.append)
        assert channel.subscriber_count == 1
        unsubscribe()
        unsubscribe()
        assert channel.subscriber_count == 0
        await channel.publish(1)
        assert seen == []

    @pytest.mark.asyncio
    async def test_failing_subscriber_is_isolated(self):
        channel = EventChannel("test")
        seen = []

        def broken(_event):
            raise RuntimeError("boom")

        channel.subscribe(broken)
        channel.subscribe(seen.append)
        await channel.publish("x")
        assert seen == ["x"]


class TestEventBus:
    @pytest.mark.asyncio
    async def test_channels_are_independent(self):
        bus = EventBus()
        changes, progress = [], []
        bus.file_changes.subscribe(changes.append)
        bus.index_progress.subscribe(progress.append)

        await bus.file_changes.publish(FileChange("a.py", "p1", "modified"))
        await bus.index_progress.publish(IndexProgress("p1", 50, "a.py", 1, 2))

        assert [c.path for c in changes] == ["a.py"]
        assert [p.progress for p in progress] == [50]
        assert bus.chunking_progress.subscriber_count == 0
