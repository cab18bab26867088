"""Tests for the per-session event bus."""
import asyncio

from setting_forge.models import EventType, GenerationProgress
from setting_forge.models.events import HEARTBEAT, STREAM_READY
from setting_forge.services.event_bus import EventBus, StreamKind


async def collect(stream, limit=50):
    events = []
    async for event in stream:
        events.append(event)
        if len(events) >= limit:
            break
    return events


class TestEventBus:
    """Replay, live delivery, heartbeat and close."""

    async def test_late_subscriber_gets_replay(self):
        bus = EventBus(replay_size=16, heartbeat_interval=0.05)
        bus.open("s1")
        for i in range(3):
            bus.publish("s1", GenerationProgress(message=f"step {i}"))
        bus.close("s1")

        events = await collect(bus.stream("s1"))
        assert events[0].message == STREAM_READY
        assert [e.message for e in events[1:]] == ["step 0", "step 1", "step 2"]
        assert all(e.session_id == "s1" for e in events)

    async def test_replay_is_bounded(self):
        bus = EventBus(replay_size=2, heartbeat_interval=0.05)
        bus.open("s1")
        for i in range(5):
            bus.publish("s1", GenerationProgress(message=f"step {i}"))
        bus.close("s1")

        events = await collect(bus.stream("s1"))
        assert [e.message for e in events[1:]] == ["step 3", "step 4"]

    async def test_live_events_and_close_end_stream(self):
        bus = EventBus(replay_size=16, heartbeat_interval=5)
        bus.open("s1")
        consumer = asyncio.create_task(collect(bus.stream("s1")))
        await asyncio.sleep(0.01)
        bus.publish("s1", GenerationProgress(message="live"))
        bus.close("s1")

        events = await asyncio.wait_for(consumer, timeout=1)
        assert [e.message for e in events] == [STREAM_READY, "live"]

    async def test_heartbeat_when_silent(self):
        bus = EventBus(replay_size=16, heartbeat_interval=0.01)
        bus.open("s1")
        events = await asyncio.wait_for(collect(bus.stream("s1"), limit=3), timeout=1)
        assert [e.message for e in events[1:]] == [HEARTBEAT, HEARTBEAT]
        assert all(e.event_type == EventType.GENERATION_PROGRESS for e in events)

    async def test_unknown_session_yields_ready_only(self):
        bus = EventBus(replay_size=16, heartbeat_interval=0.05)
        events = await collect(bus.stream("missing"))
        assert [e.message for e in events] == [STREAM_READY]

    def test_publish_after_close_is_dropped(self):
        bus = EventBus(replay_size=16, heartbeat_interval=0.05)
        bus.open("s1")
        bus.close("s1")
        assert not bus.publish("s1", GenerationProgress(message="late"))
        assert not bus.channel("s1").history

    def test_channels_are_separate(self):
        bus = EventBus(replay_size=16, heartbeat_interval=0.05)
        bus.open("s1")
        assert not bus.publish("s1", GenerationProgress(message="edit"), StreamKind.MODIFICATION)
        bus.open("s1", StreamKind.MODIFICATION)
        assert bus.publish("s1", GenerationProgress(message="edit"), StreamKind.MODIFICATION)
        assert not bus.channel("s1").history

    def test_reopen_after_close_starts_fresh(self):
        bus = EventBus(replay_size=16, heartbeat_interval=0.05)
        first = bus.open("s1", StreamKind.MODIFICATION)
        bus.publish("s1", GenerationProgress(message="old"), StreamKind.MODIFICATION)
        bus.close("s1", StreamKind.MODIFICATION)
        second = bus.open("s1", StreamKind.MODIFICATION)
        assert second is not first
        assert not second.history

    def test_remove_session_forgets_channels(self):
        bus = EventBus(replay_size=16, heartbeat_interval=0.05)
        bus.open("s1")
        bus.open("s1", StreamKind.MODIFICATION)
        bus.remove_session("s1")
        assert bus.channel("s1") is None
        assert bus.channel("s1", StreamKind.MODIFICATION) is None
