"""
Tests for the in-process progress channel behind the SSE streams.
"""
import asyncio
import pytest
from contextlib import aclosing

from services.experiment_progress import (
    COMPLETE,
    PROGRESS,
    ChannelRegistry,
    ProgressChannel,
    ProgressEvent,
)


async def _collect(channel, heartbeat_s=None, limit=None):
    events = []
    async with aclosing(channel.stream(heartbeat_s)) as stream:
        async for event in stream:
            events.append(event)
            if limit is not None and len(events) >= limit:
                break
    return events


class TestProgressEvent:
    def test_optional_tags_only_when_set(self):
        payload = ProgressEvent(PROGRESS, "Starting experiment...", run_id=4).to_dict()
        assert payload["type"] == "progress"
        assert payload["run_id"] == 4
        assert "batch_id" not in payload
        assert "timestamp" in payload


class TestProgressChannel:
    @pytest.mark.asyncio
    async def test_late_subscriber_replays_history(self):
        channel = ProgressChannel("1")
        channel.publish(ProgressEvent(PROGRESS, "one"))
        channel.publish(ProgressEvent(COMPLETE, "two"))
        channel.close()

        events = await _collect(channel)
        assert [e.message for e in events] == ["one", "two"]

    @pytest.mark.asyncio
    async def test_live_subscriber_sees_events_then_end(self):
        channel = ProgressChannel("1")
        reader = asyncio.create_task(_collect(channel))
        await asyncio.sleep(0)

        channel.publish(ProgressEvent(PROGRESS, "a"))
        channel.publish(ProgressEvent(COMPLETE, "b"))
        channel.close()

        events = await asyncio.wait_for(reader, timeout=1)
        assert [e.type for e in events] == ["progress", "complete"]

    @pytest.mark.asyncio
    async def test_every_subscriber_gets_every_event(self):
        channel = ProgressChannel("1")
        readers = [asyncio.create_task(_collect(channel)) for _ in range(3)]
        await asyncio.sleep(0)

        for i in range(5):
            channel.publish(ProgressEvent(PROGRESS, str(i)))
        channel.close()

        results = await asyncio.wait_for(asyncio.gather(*readers), timeout=1)
        for events in results:
            assert [e.message for e in events] == ["0", "1", "2", "3", "4"]

    @pytest.mark.asyncio
    async def test_publish_after_close_is_dropped(self):
        channel = ProgressChannel("1")
        channel.close()
        channel.publish(ProgressEvent(PROGRESS, "late"))
        assert channel.history == []
        assert await _collect(channel) == []

    @pytest.mark.asyncio
    async def test_heartbeat_yields_none_while_idle(self):
        channel = ProgressChannel("1")
        events = await asyncio.wait_for(_collect(channel, heartbeat_s=0.01, limit=2), timeout=1)
        assert events == [None, None]

    @pytest.mark.asyncio
    async def test_leaving_early_unsubscribes(self):
        channel = ProgressChannel("1")
        channel.publish(ProgressEvent(PROGRESS, "a"))
        await _collect(channel, limit=1)
        assert channel._subscribers == []

    @pytest.mark.asyncio
    async def test_leaving_early_keeps_other_subscribers(self):
        channel = ProgressChannel("1")
        queue = channel.subscribe()
        channel.publish(ProgressEvent(PROGRESS, "a"))

        await _collect(channel, limit=1)

        assert channel._subscribers == [queue]


class TestChannelRegistry:
    def test_close_and_remove(self):
        registry = ChannelRegistry()
        channel = registry.open(7)

        assert registry.get(7) is channel

        registry.close_and_remove(7)
        assert registry.get(7) is None
        assert channel.closed
        # Idempotent
        registry.close_and_remove(7)
