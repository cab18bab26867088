"""In-memory session store with TTL expiry and a periodic sweep."""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional
from uuid import uuid4

from setting_forge.config import settings
from setting_forge.models import GenerationSession, SessionStatus


logger = logging.getLogger(__name__)


class SessionStore:
    """Single owner of live generation sessions."""

    def __init__(
        self,
        ttl: timedelta | None = None,
        clock: Callable[[], datetime] = datetime.utcnow,
        on_remove: Optional[Callable[[str], None]] = None,
    ):
        self.ttl = ttl or timedelta(hours=settings.session_ttl_hours)
        self._clock = clock
        self._sessions: dict[str, GenerationSession] = {}
        self._on_remove = on_remove
        self._sweeper: asyncio.Task | None = None

    def set_on_remove(self, callback: Optional[Callable[[str], None]]):
        self._on_remove = callback

    def create(
        self,
        user_id: str,
        novel_id: Optional[str],
        prompt: str,
        strategy_id: str,
        prompt_template_id: Optional[str] = None,
        model_config_id: Optional[str] = None,
    ) -> GenerationSession:
        """Create and register a new session."""
        now = self._clock()
        session = GenerationSession(
            session_id=str(uuid4()),
            user_id=user_id,
            novel_id=novel_id,
            initial_prompt=prompt,
            strategy_id=strategy_id,
            prompt_template_id=prompt_template_id,
            model_config_id=model_config_id,
            status=SessionStatus.INITIALIZING,
            created_at=now,
            updated_at=now,
            expires_at=now + self.ttl,
        )
        self._sessions[session.session_id] = session
        logger.info("Created session %s for user %s", session.session_id, user_id)
        return session

    def get(self, session_id: str) -> Optional[GenerationSession]:
        """Get a live session. Expired sessions are removed and reported missing."""
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if session.is_expired(self._clock()):
            logger.info("Session %s expired on access", session_id)
            self._remove(session_id)
            return None
        return session

    def save(self, session: GenerationSession) -> GenerationSession:
        """Persist mutations of a session back into the store."""
        session.updated_at = self._clock()
        self._sessions[session.session_id] = session
        return session

    def update_status(self, session_id: str, status: SessionStatus) -> Optional[GenerationSession]:
        session = self.get(session_id)
        if session is None:
            return None
        session.status = status
        return self.save(session)

    def delete(self, session_id: str) -> bool:
        """Delete a session by ID."""
        if session_id not in self._sessions:
            return False
        self._remove(session_id)
        return True

    def sweep_expired(self) -> int:
        """Remove every session whose expiry has passed."""
        now = self._clock()
        expired = [sid for sid, s in self._sessions.items() if s.is_expired(now)]
        for sid in expired:
            self._remove(sid)
        if expired:
            logger.info("Swept %d expired sessions", len(expired))
        return len(expired)

    def count(self) -> int:
        return len(self._sessions)

    def _remove(self, session_id: str):
        self._sessions.pop(session_id, None)
        if self._on_remove is not None:
            try:
                self._on_remove(session_id)
            except Exception:
                logger.exception("Session removal callback failed for %s", session_id)

    async def _sweep_loop(self, interval: float):
        while True:
            await asyncio.sleep(interval)
            self.sweep_expired()

    def start_sweeper(self, interval: float | None = None):
        """Start the periodic sweep on the running event loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(
                self._sweep_loop(interval or settings.session_sweep_interval_seconds)
            )

    async def stop_sweeper(self):
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
