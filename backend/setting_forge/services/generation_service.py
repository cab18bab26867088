"""Generation service: the facade behind the HTTP, WebSocket and MCP surfaces."""
import asyncio
import logging
from typing import AsyncIterator, Coroutine, Optional

from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import BaseModel

from setting_forge.agents.prompts import GENERATION_TOOL_SYSTEM_PROMPT, GENERATION_TOOL_TASK_PROMPT
from setting_forge.agents.tools import GENERATION_TOOLS, SETTING_TYPE_NAMES
from setting_forge.config import settings
from setting_forge.errors import (
    GenerationFailed,
    HistoryNotFoundError,
    InvalidSessionStateError,
    SessionNotFoundError,
    ValidationFailed,
    is_transient_error,
    safe_error_message,
)
from setting_forge.graph import run_tool_loop
from setting_forge.models import (
    GenerationCompleted,
    GenerationError,
    GenerationSession,
    ModificationScope,
    SaveResult,
    SessionStarted,
    SessionStatus,
    SettingNode,
)
from setting_forge.models.events import OUTCOME_CANCELLED, BaseEvent
from setting_forge.models.session import (
    AUTO_SAVED_HISTORY_ID,
    AUTO_SAVED_ROOT_IDS,
    HYBRID,
    MODEL_ROUTE,
    SOURCE_HISTORY_ID,
    TOOL_PENDING_COMPLETE,
    USE_PUBLIC_POOL,
)
from setting_forge.models.tool_results import CandidateNode
from . import temp_ids
from .admission import NodeAdmitter
from .completion_gate import CompletionGate
from .credits import CreditLedger
from .event_bus import EventBus, StreamKind
from .history_service import HistoryService
from .model_router import ModelRouter
from .modification import ModificationService, summarize_report
from .orchestrator import ExtractionOrchestrator
from .session_store import SessionStore
from .strategies import GenerationStrategy, StrategyRegistry
from .text_producer import TextProducer
from .validation import ValidationEngine


logger = logging.getLogger(__name__)

GENERATION_FAILED = "GENERATION_FAILED"


class SessionProgress(BaseModel):
    """Status snapshot of one session."""
    session_id: str
    status: SessionStatus
    progress: int
    current_step: int
    total_steps: int
    total_nodes: int
    error_message: Optional[str] = None


def calculate_progress(session: GenerationSession) -> int:
    if session.status in (SessionStatus.COMPLETED, SessionStatus.SAVED):
        return 100
    if session.status == SessionStatus.GENERATING:
        return min(90, len(session.nodes) * 10)
    return 0


def total_steps_for(strategy: GenerationStrategy) -> int:
    return strategy.expected_root_nodes * 2 if strategy.expected_root_nodes else 10


class GenerationService:
    """Starts, streams, edits, cancels and saves generation sessions."""

    def __init__(
        self,
        store: SessionStore,
        bus: EventBus,
        gate: CompletionGate,
        admitter: NodeAdmitter,
        orchestrator: ExtractionOrchestrator,
        producer: TextProducer,
        modifications: ModificationService,
        history: HistoryService,
        router: ModelRouter,
        strategies: StrategyRegistry,
    ):
        self.store = store
        self.bus = bus
        self.gate = gate
        self.admitter = admitter
        self.orchestrator = orchestrator
        self.producer = producer
        self.modifications = modifications
        self.history = history
        self.router = router
        self.strategies = strategies
        self._runs: dict[str, asyncio.Task] = {}
        self._background: set[asyncio.Task] = set()
        self._save_locks: dict[str, asyncio.Lock] = {}

        self.gate.finalizer = self._auto_save
        self.store.set_on_remove(self._on_session_removed)

    # Bookkeeping

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _track_run(self, session_id: str, task: asyncio.Task):
        """Remember the task driving a session so cancel can stop it."""
        self._runs[session_id] = task

        def _done(_):
            if self._runs.get(session_id) is task:
                del self._runs[session_id]

        task.add_done_callback(_done)

    def _save_lock(self, session_id: str) -> asyncio.Lock:
        lock = self._save_locks.get(session_id)
        if lock is None:
            lock = self._save_locks[session_id] = asyncio.Lock()
        return lock

    def _on_session_removed(self, session_id: str):
        task = self._runs.pop(session_id, None)
        if task is not None and not task.done():
            task.cancel()
        self.bus.remove_session(session_id)
        self.gate.forget(session_id)
        self.modifications.forget(session_id)
        self._save_locks.pop(session_id, None)

    async def wait_idle(self):
        """Wait for every background run and extraction task started so far."""
        while self._background or self.orchestrator.pending:
            await asyncio.gather(*list(self._background), return_exceptions=True)
            await self.orchestrator.drain()

    async def shutdown(self):
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*list(self._background), return_exceptions=True)

    def get_session(self, session_id: str) -> GenerationSession:
        session = self.store.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    # Start

    def _begin(
        self,
        user_id: str,
        prompt: str,
        novel_id: Optional[str],
        strategy_id: Optional[str],
        prompt_template_id: Optional[str],
        model_config_id: Optional[str],
        hybrid: bool,
        use_public_pool: bool,
    ) -> GenerationSession:
        if not prompt or not prompt.strip():
            raise ValidationFailed(["Prompt is required"])
        strategy = self.strategies.get(strategy_id or prompt_template_id)
        session = self.store.create(
            user_id, novel_id, prompt.strip(), strategy.id,
            prompt_template_id=prompt_template_id,
            model_config_id=model_config_id,
        )
        session.metadata[HYBRID] = hybrid
        session.metadata[USE_PUBLIC_POOL] = use_public_pool
        self.bus.open(session.session_id, StreamKind.GENERATION)
        session.status = SessionStatus.GENERATING
        self.store.save(session)
        self.bus.publish(session.session_id, SessionStarted(initial_prompt=session.initial_prompt, strategy=strategy.id))
        return session

    async def start(
        self,
        user_id: str,
        prompt: str,
        novel_id: Optional[str] = None,
        strategy_id: Optional[str] = None,
        prompt_template_id: Optional[str] = None,
        model_config_id: Optional[str] = None,
    ) -> GenerationSession:
        """Start a tool-loop generation in the background."""
        session = self._begin(user_id, prompt, novel_id, strategy_id, prompt_template_id,
                              model_config_id, hybrid=False, use_public_pool=False)
        self._track_run(session.session_id, self._spawn(self._run_tool_generation(session)))
        return session

    async def start_hybrid(
        self,
        user_id: str,
        prompt: str,
        novel_id: Optional[str] = None,
        strategy_id: Optional[str] = None,
        prompt_template_id: Optional[str] = None,
        model_config_id: Optional[str] = None,
        use_public_pool: bool = False,
    ) -> GenerationSession:
        """Start a streaming text + incremental extraction generation in the background."""
        session = self._begin(user_id, prompt, novel_id, strategy_id, prompt_template_id,
                              model_config_id, hybrid=True, use_public_pool=use_public_pool)
        self._track_run(session.session_id, self._spawn(self._run_hybrid(session, use_public_pool)))
        return session

    async def _run_hybrid(self, session: GenerationSession, use_public_pool: bool):
        sid = session.session_id
        try:
            await self.producer.run(session, use_public_pool)
        except GenerationFailed as e:
            logger.error("Hybrid generation for session %s failed: %s", sid, e)
            self._fail(session, str(e))
        except Exception as e:
            logger.exception("Hybrid generation for session %s crashed", sid)
            self._fail(session, safe_error_message(e))

    async def _run_tool_generation(self, session: GenerationSession):
        sid = session.session_id
        strategy = self.strategies.get(session.strategy_id)

        def apply(candidates: list[CandidateNode]) -> str:
            return summarize_report(self.admitter.admit_batch(session, candidates))

        messages = [
            SystemMessage(content=GENERATION_TOOL_SYSTEM_PROMPT.format(
                strategy_name=strategy.name,
                strategy_description=strategy.description,
                templates_info=strategy.templates_info(),
                rules_info=strategy.rules_info(),
                setting_types=", ".join(SETTING_TYPE_NAMES),
            )),
            HumanMessage(content=GENERATION_TOOL_TASK_PROMPT.format(prompt=session.initial_prompt)),
        ]
        try:
            route = self.router.resolve(session.user_id, session.model_config_id, False)
            session.metadata[MODEL_ROUTE] = route.describe()
            llm = self.router.chat_model(route, settings.text_temperature)
            try:
                state = await run_tool_loop(
                    llm, GENERATION_TOOLS, messages, apply, settings.generation_tool_loop_steps,
                )
            except Exception as e:
                if not is_transient_error(e):
                    raise
                logger.warning("Tool-loop generation for session %s interrupted: %s", sid, e)
                self._cancel(session)
                return
            if state["complete"]:
                session.metadata[TOOL_PENDING_COMPLETE] = True
            if session.status != SessionStatus.GENERATING:
                return
            self.gate.mark_text_ended(session)
            await self.gate.attempt_finalize(session, "tool loop finished")
        except Exception as e:
            logger.exception("Tool-loop generation for session %s failed", sid)
            self._fail(session, safe_error_message(e))

    # Terminal transitions

    def _fail(self, session: GenerationSession, message: str):
        if session.status not in (SessionStatus.INITIALIZING, SessionStatus.GENERATING):
            return
        sid = session.session_id
        session.status = SessionStatus.ERROR
        session.error_message = message
        self.store.save(session)
        self.gate.mark_closed(sid)
        self.bus.publish(sid, GenerationError(
            error_code=GENERATION_FAILED,
            error_message=safe_error_message(message),
            recoverable=False,
        ))
        self.bus.close(sid, StreamKind.GENERATION)

    def _cancel(self, session: GenerationSession):
        sid = session.session_id
        session.status = SessionStatus.CANCELLED
        self.store.save(session)
        self.gate.mark_closed(sid)
        self.bus.publish(sid, GenerationCompleted(
            total_nodes_generated=len(session.nodes),
            generation_time_ms=0,
            status=OUTCOME_CANCELLED,
        ))
        self.bus.close(sid, StreamKind.GENERATION)
        logger.info("Session %s cancelled with %d nodes", sid, len(session.nodes))

    async def cancel(self, session_id: str) -> GenerationSession:
        """Stop a running generation or adjustment. Extraction results arriving later are discarded."""
        session = self.get_session(session_id)
        if session.status not in (SessionStatus.INITIALIZING, SessionStatus.GENERATING):
            raise InvalidSessionStateError(
                f"Session {session_id} is not running (status {session.status.value})"
            )
        self._cancel(session)
        task = self._runs.pop(session_id, None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        return session

    # Streaming

    def stream(self, session_id: str, kind: StreamKind = StreamKind.GENERATION) -> AsyncIterator[BaseEvent]:
        self.get_session(session_id)
        return self.bus.stream(session_id, kind)

    # Edits

    async def modify_node(
        self,
        session_id: str,
        node_id: str,
        instruction: str,
        scope: ModificationScope = ModificationScope.SELF,
        model_config_id: Optional[str] = None,
    ) -> asyncio.Task:
        """Validate the request, open the modification channel and run the edit in the background."""
        session = self.get_session(session_id)
        if not instruction or not instruction.strip():
            raise ValidationFailed(["Instruction is required"], node_id)
        self.modifications.prepare_modification(session, node_id)
        return self._spawn(self.modifications.modify_node(
            session, node_id, instruction.strip(), scope, model_config_id,
        ))

    async def adjust(
        self,
        session_id: str,
        instruction: str,
        model_config_id: Optional[str] = None,
        prompt_template_id: Optional[str] = None,
    ) -> GenerationSession:
        session = self.get_session(session_id)
        if not instruction or not instruction.strip():
            raise ValidationFailed(["Instruction is required"])
        self.modifications.prepare_adjust(session)
        self._track_run(session_id, self._spawn(
            self.modifications.adjust_session(session, instruction.strip(), model_config_id, prompt_template_id),
        ))
        return session

    def update_node_content(self, session_id: str, node_id: str, description: str) -> SettingNode:
        return self.modifications.update_node_content(self.get_session(session_id), node_id, description)

    def delete_node(self, session_id: str, node_id: str) -> list[str]:
        return self.modifications.delete_node(self.get_session(session_id), node_id)

    # Persistence

    async def _auto_save(self, session: GenerationSession):
        """Finalizer run by the completion gate; the session stays COMPLETED."""
        async with self._save_lock(session.session_id):
            if session.metadata.get(AUTO_SAVED_HISTORY_ID):
                return
            result = self.history.create_from_session(session)
            session.metadata[AUTO_SAVED_HISTORY_ID] = result.history_id
            session.metadata[AUTO_SAVED_ROOT_IDS] = result.root_node_ids
            self.store.save(session)
            logger.info("Auto-saved session %s as history %s", session.session_id, result.history_id)

    async def save(
        self,
        session_id: str,
        novel_id: Optional[str] = None,
        update_existing: bool = False,
        target_history_id: Optional[str] = None,
    ) -> SaveResult:
        """
        Persist the tree and mark the session SAVED.

        Idempotent: a recorded auto-save id is returned as is unless an
        update of an existing record is requested. A ``novel_id`` links the
        session and its record to that novel.
        """
        session = self.get_session(session_id)
        async with self._save_lock(session_id):
            recorded = session.metadata.get(AUTO_SAVED_HISTORY_ID)
            if recorded and not update_existing:
                if novel_id and novel_id != session.novel_id:
                    session.novel_id = novel_id
                    self.history.link_novel(recorded, novel_id)
                if session.status == SessionStatus.COMPLETED:
                    session.status = SessionStatus.SAVED
                    self.store.save(session)
                return SaveResult(
                    root_node_ids=session.metadata.get(AUTO_SAVED_ROOT_IDS) or list(session.root_node_ids),
                    history_id=recorded,
                )

            allowed = (SessionStatus.COMPLETED, SessionStatus.SAVED) if update_existing else (SessionStatus.COMPLETED,)
            if session.status not in allowed:
                raise InvalidSessionStateError(
                    f"Session {session_id} cannot be saved in status {session.status.value}"
                )
            if novel_id:
                session.novel_id = novel_id
            if update_existing:
                target = target_history_id or recorded or session.metadata.get(SOURCE_HISTORY_ID)
                if not target:
                    raise InvalidSessionStateError(f"Session {session_id} has no history record to update")
                result = self.history.update_from_session(target, session, novel_id)
                if result is None:
                    raise InvalidSessionStateError(f"History record {target} not found")
            else:
                result = self.history.create_from_session(session, novel_id)

            session.metadata[AUTO_SAVED_HISTORY_ID] = result.history_id
            session.metadata[AUTO_SAVED_ROOT_IDS] = result.root_node_ids
            session.status = SessionStatus.SAVED
            self.store.save(session)
            return result

    def start_from_history(
        self,
        history_id: str,
        new_prompt: Optional[str] = None,
        model_config_id: Optional[str] = None,
    ) -> GenerationSession:
        """
        Rebuild a COMPLETED session from a saved record so the tree can be
        modified, adjusted and saved again. The novel link is not inherited;
        ``update_existing`` saves write back to the source record.
        """
        record = self.history.get(history_id)
        if record is None:
            raise HistoryNotFoundError(history_id)
        prompt = (new_prompt or "").strip() or record.initial_prompt or f"Edit history: {record.title}"
        strategy = self.strategies.get(record.strategy_id)
        session = self.store.create(record.user_id, None, prompt, strategy.id, model_config_id=model_config_id)
        for data in record.nodes:
            session.add_node(SettingNode.model_validate(data))
        ordered = [root_id for root_id in record.root_node_ids if root_id in session.nodes]
        session.root_node_ids = ordered + [root_id for root_id in session.root_node_ids if root_id not in ordered]
        temp_ids.rebuild(session)
        session.metadata[SOURCE_HISTORY_ID] = history_id
        session.status = SessionStatus.COMPLETED
        self.store.save(session)

        sid = session.session_id
        self.bus.open(sid, StreamKind.GENERATION)
        self.bus.publish(sid, SessionStarted(initial_prompt=session.initial_prompt, strategy=strategy.id))
        self.bus.publish(sid, GenerationCompleted(total_nodes_generated=len(session.nodes), generation_time_ms=0))
        self.bus.close(sid, StreamKind.GENERATION)
        self.gate.mark_closed(sid)
        logger.info("Restored history %s into session %s (%d nodes)", history_id, sid, len(session.nodes))
        return session

    # Queries

    def status(self, session_id: str) -> SessionProgress:
        session = self.get_session(session_id)
        total_steps = total_steps_for(self.strategies.get(session.strategy_id))
        return SessionProgress(
            session_id=session_id,
            status=session.status,
            progress=calculate_progress(session),
            current_step=min(len(session.nodes), total_steps),
            total_steps=total_steps,
            total_nodes=len(session.nodes),
            error_message=session.error_message,
        )

    def list_strategies(self) -> list[GenerationStrategy]:
        return self.strategies.list_all()


def build_generation_service(
    router: ModelRouter | None = None,
    history: HistoryService | None = None,
    credits: CreditLedger | None = None,
    strategies: StrategyRegistry | None = None,
    store: SessionStore | None = None,
) -> GenerationService:
    """Wire every component of the engine together."""
    store = store or SessionStore()
    bus = EventBus()
    router = router or ModelRouter()
    strategies = strategies or StrategyRegistry()
    gate = CompletionGate(store, bus)
    admitter = NodeAdmitter(store, bus, ValidationEngine(), strategies)
    orchestrator = ExtractionOrchestrator(store, bus, gate, admitter, router)
    producer = TextProducer(store, bus, gate, orchestrator, router, credits or CreditLedger(), strategies)
    modifications = ModificationService(store, bus, admitter, router, strategies)
    return GenerationService(
        store=store,
        bus=bus,
        gate=gate,
        admitter=admitter,
        orchestrator=orchestrator,
        producer=producer,
        modifications=modifications,
        history=history or HistoryService(),
        router=router,
        strategies=strategies,
    )


generation_service = build_generation_service()
