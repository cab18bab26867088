"""Per-session event broadcast with replay for late subscribers and heartbeat."""
import asyncio
import logging
from collections import deque
from datetime import datetime
from enum import Enum
from typing import AsyncIterator, Optional

from setting_forge.config import settings
from setting_forge.models.events import HEARTBEAT, STREAM_READY, BaseEvent, GenerationProgress


logger = logging.getLogger(__name__)

_CLOSED = object()


class StreamKind(str, Enum):
    """Generation and modification traffic use separate channels."""
    GENERATION = "generation"
    MODIFICATION = "modification"


class EventChannel:
    """One broadcast channel: bounded replay buffer plus subscriber queues."""

    def __init__(self, replay_size: int):
        self.history: deque[BaseEvent] = deque(maxlen=replay_size)
        self.subscribers: list[asyncio.Queue] = []
        self.closed = False

    def publish(self, event: BaseEvent) -> bool:
        if self.closed:
            return False
        self.history.append(event)
        for queue in self.subscribers:
            queue.put_nowait(event)
        return True

    def close(self):
        if self.closed:
            return
        self.closed = True
        for queue in self.subscribers:
            queue.put_nowait(_CLOSED)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        for event in self.history:
            queue.put_nowait(event)
        if self.closed:
            queue.put_nowait(_CLOSED)
        else:
            self.subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        if queue in self.subscribers:
            self.subscribers.remove(queue)


class EventBus:
    """Owns every session's event channels."""

    def __init__(self, replay_size: int | None = None, heartbeat_interval: float | None = None):
        self.replay_size = replay_size or settings.event_replay_size
        self.heartbeat_interval = heartbeat_interval or settings.heartbeat_interval_seconds
        self._channels: dict[tuple[str, StreamKind], EventChannel] = {}

    def open(self, session_id: str, kind: StreamKind = StreamKind.GENERATION) -> EventChannel:
        """Return the live channel, creating a fresh one if none is open."""
        key = (session_id, kind)
        channel = self._channels.get(key)
        if channel is None or channel.closed:
            channel = EventChannel(self.replay_size)
            self._channels[key] = channel
        return channel

    def channel(self, session_id: str, kind: StreamKind = StreamKind.GENERATION) -> Optional[EventChannel]:
        return self._channels.get((session_id, kind))

    def publish(
        self,
        session_id: str,
        event: BaseEvent,
        kind: StreamKind = StreamKind.GENERATION,
    ) -> bool:
        """Stamp and broadcast an event. Dropped when the channel is gone or closed."""
        event.session_id = session_id
        event.timestamp = datetime.utcnow()
        channel = self._channels.get((session_id, kind))
        if channel is None or channel.closed:
            logger.debug("Dropped %s for session %s (%s channel not open)",
                         getattr(event, "event_type", "event"), session_id, kind.value)
            return False
        return channel.publish(event)

    def close(self, session_id: str, kind: StreamKind = StreamKind.GENERATION):
        channel = self._channels.get((session_id, kind))
        if channel is not None:
            channel.close()
            logger.debug("Closed %s channel for session %s", kind.value, session_id)

    def remove_session(self, session_id: str):
        """Close and forget every channel of a session."""
        for kind in StreamKind:
            channel = self._channels.pop((session_id, kind), None)
            if channel is not None:
                channel.close()

    async def stream(
        self,
        session_id: str,
        kind: StreamKind = StreamKind.GENERATION,
        heartbeat_interval: float | None = None,
    ) -> AsyncIterator[BaseEvent]:
        """
        Subscribe to a session's events.

        Yields a STREAM_READY progress event, then replayed and live events,
        with a HEARTBEAT progress event after every silent interval. Ends when
        the channel closes.
        """
        interval = heartbeat_interval or self.heartbeat_interval
        yield GenerationProgress(session_id=session_id, message=STREAM_READY)

        channel = self._channels.get((session_id, kind))
        if channel is None:
            return
        queue = channel.subscribe()
        try:
            while True:
                try:
                    item = await asyncio.wait_for(queue.get(), timeout=interval)
                except asyncio.TimeoutError:
                    if channel.closed:
                        return
                    yield GenerationProgress(session_id=session_id, message=HEARTBEAT)
                    continue
                if item is _CLOSED:
                    return
                yield item
        finally:
            channel.unsubscribe(queue)
