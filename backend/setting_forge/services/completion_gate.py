"""Single-fire finalize decision for generation sessions."""
import asyncio
import logging
import time
from datetime import datetime
from typing import Awaitable, Callable, Optional
from uuid import uuid4

from setting_forge.config import settings
from setting_forge.models import GenerationCompleted, GenerationSession, SessionStatus
from setting_forge.models.session import STREAM_FINALIZED, TEXT_ENDED_AT, TEXT_STREAM_ENDED
from .event_bus import EventBus, StreamKind
from .session_store import SessionStore


logger = logging.getLogger(__name__)

Finalizer = Callable[[GenerationSession], Awaitable[None]]


class CompletionGate:
    """
    Guarantees exactly one finalize per session.

    Finalize is a pure function of (text phase ended, outstanding extraction
    work) and may be attempted from any number of places; acceptance is a
    test-and-set on the ``completing`` set with no await in between.
    """

    def __init__(
        self,
        store: SessionStore,
        bus: EventBus,
        finalizer: Optional[Finalizer] = None,
        inflight_timeout: float | None = None,
        buffer_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.bus = bus
        self.finalizer = finalizer
        self.inflight_timeout = inflight_timeout if inflight_timeout is not None else settings.inflight_timeout_seconds
        self.buffer_seconds = buffer_seconds if buffer_seconds is not None else settings.finalize_buffer_ms / 1000
        self._clock = clock
        self.completing: set[str] = set()
        self.completed: set[str] = set()
        self._inflight: dict[str, dict[str, float]] = {}

    # In-flight registry

    def register_task(self, session_id: str) -> str:
        task_id = str(uuid4())
        self._inflight.setdefault(session_id, {})[task_id] = self._clock()
        return task_id

    def finish_task(self, session_id: str, task_id: str):
        tasks = self._inflight.get(session_id)
        if tasks is not None:
            tasks.pop(task_id, None)

    def inflight_count(self, session_id: str) -> int:
        return len(self._inflight.get(session_id, {}))

    def mark_text_ended(self, session: GenerationSession):
        session.metadata[TEXT_STREAM_ENDED] = True
        session.metadata[TEXT_ENDED_AT] = self._clock()
        self.store.save(session)

    def mark_closed(self, session_id: str):
        """Block any later finalize (cancel, failure)."""
        self.completed.add(session_id)
        self.completing.discard(session_id)
        self._inflight.pop(session_id, None)

    def forget(self, session_id: str):
        self.completed.discard(session_id)
        self.completing.discard(session_id)
        self._inflight.pop(session_id, None)

    # Gate

    def _drained(self, session_id: str) -> bool:
        tasks = self._inflight.get(session_id)
        if not tasks:
            return True
        now = self._clock()
        if all(now - started >= self.inflight_timeout for started in tasks.values()):
            logger.warning("All %d in-flight tasks of session %s exceeded %.0fs, clearing",
                           len(tasks), session_id, self.inflight_timeout)
            tasks.clear()
            return True
        return False

    def _blocked_reason(self, session: GenerationSession) -> Optional[str]:
        sid = session.session_id
        if session.metadata.get(STREAM_FINALIZED):
            return "already finalized"
        if sid in self.completed or sid in self.completing:
            return "already completing/completed"
        if session.status != SessionStatus.GENERATING:
            return f"status {session.status.value}"
        if not session.metadata.get(TEXT_STREAM_ENDED):
            return "text phase still running"
        if not self._drained(sid):
            return f"{self.inflight_count(sid)} extraction tasks in flight"
        return None

    async def attempt_finalize(self, session: GenerationSession, reason: str = "") -> bool:
        """Finalize if every condition holds. Returns True only for the accepted attempt."""
        sid = session.session_id
        ended_at = session.metadata.get(TEXT_ENDED_AT)
        if session.metadata.get(TEXT_STREAM_ENDED) and isinstance(ended_at, (int, float)):
            remaining = self.buffer_seconds - (self._clock() - ended_at)
            if remaining > 0:
                await asyncio.sleep(remaining)

        blocked = self._blocked_reason(session)
        if blocked:
            logger.debug("Finalize skipped for %s (%s): %s", sid, reason, blocked)
            return False
        self.completing.add(sid)

        try:
            await self._finalize(session)
        finally:
            self.completed.add(sid)
            self.completing.discard(sid)
            self._inflight.pop(sid, None)
        return True

    async def _finalize(self, session: GenerationSession):
        sid = session.session_id
        session.metadata[STREAM_FINALIZED] = True
        session.status = SessionStatus.COMPLETED
        self.store.save(session)

        duration_ms = int((datetime.utcnow() - session.created_at).total_seconds() * 1000)
        self.bus.publish(sid, GenerationCompleted(
            total_nodes_generated=len(session.nodes),
            generation_time_ms=duration_ms,
        ))
        self.bus.close(sid, StreamKind.GENERATION)
        logger.info("Session %s finalized with %d nodes", sid, len(session.nodes))

        if not session.nodes:
            logger.info("Skipping auto-save for session %s: no generated nodes", sid)
            return
        if self.finalizer is None:
            return
        try:
            await self.finalizer(session)
        except Exception:
            logger.exception("Auto-save failed for session %s", sid)
