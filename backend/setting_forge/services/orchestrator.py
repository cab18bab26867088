"""Incremental tool orchestrator: fire-and-forget extraction per text delta."""
import asyncio
import logging

from setting_forge.agents.extractor import extract_settings
from setting_forge.config import settings
from setting_forge.errors import ToolResultParseError, safe_error_message
from setting_forge.models import GenerationError, GenerationProgress, GenerationSession
from setting_forge.models.session import TOOL_PENDING_COMPLETE
from setting_forge.models.tool_results import CandidateNode, ToolDirective, split_directives
from . import temp_ids
from .admission import NodeAdmitter
from .completion_gate import CompletionGate
from .event_bus import EventBus
from .fallback_parser import parse_text_settings
from .model_router import ModelRoute, ModelRouter
from .retry import retry_transient
from .session_store import SessionStore


logger = logging.getLogger(__name__)

EXTRACTION_FAILED = "EXTRACTION_FAILED"


class ExtractionOrchestrator:
    """
    Turns text deltas into admitted nodes without blocking the text stream.

    Every dispatched task is registered with the completion gate before it
    is scheduled and unregistered in ``finally``, after which it asks the
    gate to finalize.
    """

    def __init__(
        self,
        store: SessionStore,
        bus: EventBus,
        gate: CompletionGate,
        admitter: NodeAdmitter,
        router: ModelRouter,
        timeout: float | None = None,
        tail_timeout: float | None = None,
        retry_attempts: int | None = None,
        retry_base_delay: float | None = None,
        temperature: float = 0.2,
    ):
        self.store = store
        self.bus = bus
        self.gate = gate
        self.admitter = admitter
        self.router = router
        self.timeout = timeout or settings.extraction_timeout_seconds
        self.tail_timeout = tail_timeout or settings.tail_extraction_timeout_seconds
        self.retry_attempts = settings.stream_retry_attempts if retry_attempts is None else retry_attempts
        self.retry_base_delay = retry_base_delay
        self.temperature = temperature
        self._tasks: set[asyncio.Task] = set()

    def dispatch(
        self,
        session: GenerationSession,
        route: ModelRoute,
        delta: str,
        final: bool = False,
        partial: bool = False,
    ) -> asyncio.Task:
        """
        Schedule extraction for ``delta`` and return immediately.

        ``partial`` marks a mid-round delta whose last node may still be
        streaming; the local fallback parse leaves that node for the next delta.
        """
        task_id = self.gate.register_task(session.session_id)
        task = asyncio.create_task(self._run(session, route, delta, final, partial, task_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.debug("Dispatched extraction %s for session %s (%d chars, final=%s)",
                     task_id, session.session_id, len(delta), final)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self):
        """Wait for every task dispatched so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _extract(self, session: GenerationSession, route: ModelRoute, delta: str, final: bool) -> list[ToolDirective]:
        llm = self.router.chat_model(route, self.temperature)
        return await retry_transient(
            lambda: extract_settings(llm, delta, temp_ids.build_index(session), final),
            attempts=self.retry_attempts,
            base_delay=self.retry_base_delay,
            label=f"extraction for session {session.session_id}",
        )

    async def _run(
        self,
        session: GenerationSession,
        route: ModelRoute,
        delta: str,
        final: bool,
        partial: bool,
        task_id: str,
    ):
        sid = session.session_id
        try:
            try:
                directives = await asyncio.wait_for(
                    self._extract(session, route, delta, final),
                    timeout=self.tail_timeout if final else self.timeout,
                )
            except ToolResultParseError as e:
                logger.warning("Extraction result unusable for session %s, parsing text locally: %s", sid, e)
                directives = list(parse_text_settings(delta, drop_trailing=partial))
            except Exception as e:
                logger.warning("Extraction failed for session %s: %s", sid, e)
                self.bus.publish(sid, GenerationError(
                    error_code=EXTRACTION_FAILED,
                    error_message=safe_error_message(e),
                    recoverable=True,
                ))
                directives = list(parse_text_settings(delta, drop_trailing=partial))

            candidates, complete = split_directives(directives)
            self.apply(session, candidates, complete)
        finally:
            self.gate.finish_task(sid, task_id)
            await self.gate.attempt_finalize(session, "extraction task finished")

    def apply(self, session: GenerationSession, candidates: list[CandidateNode], complete: bool = False) -> int:
        """Admit candidates; a completion flag is only recorded, never acted on."""
        report = self.admitter.admit_batch(session, candidates)
        if complete and not report.discarded:
            session.metadata[TOOL_PENDING_COMPLETE] = True
            self.store.save(session)
        if report.created:
            self.bus.publish(session.session_id, GenerationProgress(
                message=f"Extracted {len(report.created)} new nodes",
                total_nodes=len(session.nodes),
                completed_nodes=len(session.nodes),
            ))
        return report.admitted
