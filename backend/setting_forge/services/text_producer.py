"""Streaming text producer: N free-text rounds, chunked into extraction deltas."""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import BaseMessage

from setting_forge.agents import build_round_prompt, message_text, strip_end_marker
from setting_forge.config import settings
from setting_forge.errors import (
    GenerationFailed,
    InsufficientCreditsError,
    ModelConfigError,
    is_transient_error,
    safe_error_message,
)
from setting_forge.models import GenerationError, GenerationProgress, GenerationSession, SessionStatus
from setting_forge.models.session import ACCUMULATED_TEXT, MODEL_ROUTE
from .completion_gate import CompletionGate
from .credits import CreditLedger
from .event_bus import EventBus
from .fallback_parser import parse_text_settings
from .model_router import ModelRoute, ModelRouter
from .orchestrator import ExtractionOrchestrator
from .retry import backoff_delay
from .session_store import SessionStore
from .strategies import GenerationStrategy, StrategyRegistry


logger = logging.getLogger(__name__)

INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
MODEL_CONFIG_ERROR = "MODEL_CONFIG_ERROR"
STREAM_INTERRUPTED = "STREAM_INTERRUPTED"
ROUND_FAILED = "ROUND_FAILED"

# Provider keep-alive sentinels, matched on the exact chunk
_HEARTBEAT_CHUNKS = {"heartbeat", ":heartbeat", "[heartbeat]", "[HEARTBEAT]", ":ping"}
_END = object()


def is_heartbeat_chunk(text: str) -> bool:
    return text in _HEARTBEAT_CHUNKS


@dataclass
class RoundOutcome:
    text: str
    ended_by_marker: bool = False


class RoundBuffer:
    """
    Text of the current round and the window already handed to extraction.

    ``consumed`` is where the next delta starts; it trails the flushed end
    by the overlap so entries split across a boundary are seen whole once.
    """

    def __init__(self, overlap: int, clock: Callable[[], float]):
        self.text = ""
        self.consumed = 0
        self.flushed_upto = 0
        self.overlap = overlap
        self.interrupted = False
        self._clock = clock
        self.last_flush = clock()

    def append(self, chunk: str):
        self.text += chunk

    @property
    def unflushed(self) -> int:
        return len(self.text) - self.flushed_upto

    def since_flush(self) -> float:
        return self._clock() - self.last_flush

    def take(self, final: bool = False) -> str:
        """Cut the next delta, or return "" when nothing new arrived."""
        self.last_flush = self._clock()
        if self.unflushed <= 0:
            return ""
        delta = self.text[self.consumed:]
        self.flushed_upto = len(self.text)
        if final:
            self.consumed = len(self.text)
        else:
            self.consumed = max(self.consumed, len(self.text) - self.overlap)
        return delta if delta.strip() else ""


class TextProducer:
    """Runs the text phase of a hybrid session and feeds the orchestrator."""

    def __init__(
        self,
        store: SessionStore,
        bus: EventBus,
        gate: CompletionGate,
        orchestrator: ExtractionOrchestrator,
        router: ModelRouter,
        credits: CreditLedger,
        strategies: StrategyRegistry,
        rounds: int | None = None,
        min_batch: int | None = None,
        overlap: int | None = None,
        max_wait: float | None = None,
        retry_attempts: int | None = None,
        retry_base_delay: float | None = None,
        round_timeout: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.bus = bus
        self.gate = gate
        self.orchestrator = orchestrator
        self.router = router
        self.credits = credits
        self.strategies = strategies
        self.rounds = rounds or settings.text_rounds
        self.min_batch = min_batch or settings.stream_min_batch_chars
        self.overlap = settings.stream_overlap_chars if overlap is None else overlap
        self.max_wait = max_wait or settings.stream_max_wait_seconds
        self.retry_attempts = settings.stream_retry_attempts if retry_attempts is None else retry_attempts
        self.retry_base_delay = retry_base_delay
        self.round_timeout = round_timeout or settings.round_timeout_seconds
        self._clock = clock

    async def run(self, session: GenerationSession, use_public_pool: bool = False):
        """
        Produce every round, then mark the text phase ended and try to finalize.

        Raises GenerationFailed when the phase fails before anything usable
        was produced; later failures end the phase early instead.
        """
        sid = session.session_id
        strategy = self.strategies.get(session.strategy_id)
        accumulated = session.metadata.get(ACCUMULATED_TEXT, "")

        for round_index in range(1, self.rounds + 1):
            if session.status != SessionStatus.GENERATING:
                logger.info("Session %s left GENERATING during round %d, stopping text phase", sid, round_index)
                return
            self.bus.publish(sid, GenerationProgress(
                message=f"Writing round {round_index}/{self.rounds}",
                total_nodes=len(session.nodes),
                completed_nodes=len(session.nodes),
            ))
            try:
                outcome = await self._run_round(
                    session, strategy, round_index, accumulated, use_public_pool,
                )
            except InsufficientCreditsError as e:
                logger.warning("Session %s: %s", sid, e)
                self._recoverable(sid, INSUFFICIENT_CREDITS, e)
                break
            except ModelConfigError as e:
                if round_index == 1 and not accumulated.strip():
                    raise GenerationFailed(str(e)) from e
                self._recoverable(sid, MODEL_CONFIG_ERROR, e)
                break
            except Exception as e:
                if not accumulated.strip() and not session.nodes:
                    raise GenerationFailed(safe_error_message(e)) from e
                logger.exception("Round %d of session %s failed, ending text phase early", round_index, sid)
                self._recoverable(sid, ROUND_FAILED, e)
                break

            accumulated += outcome.text
            session.metadata[ACCUMULATED_TEXT] = accumulated
            self.store.save(session)
            if outcome.ended_by_marker:
                logger.info("Session %s: end marker seen in round %d", sid, round_index)
                break

        if session.status != SessionStatus.GENERATING:
            return
        self.gate.mark_text_ended(session)
        logger.info("Text phase of session %s ended (%d chars, %d in-flight extractions)",
                    sid, len(accumulated), self.gate.inflight_count(sid))
        await self.gate.attempt_finalize(session, "text phase ended")

    def _recoverable(self, session_id: str, code: str, error: Exception):
        self.bus.publish(session_id, GenerationError(
            error_code=code,
            error_message=safe_error_message(error),
            recoverable=True,
        ))

    async def _run_round(
        self,
        session: GenerationSession,
        strategy: GenerationStrategy,
        round_index: int,
        previous_text: str,
        use_public_pool: bool,
    ) -> RoundOutcome:
        route = self.router.resolve(session.user_id, session.model_config_id, use_public_pool)
        session.metadata[MODEL_ROUTE] = route.describe()
        self.store.save(session)

        prompt = build_round_prompt(session, strategy, round_index, self.rounds, previous_text)
        if route.public:
            await self.credits.preflight(
                session.user_id, route, prompt.system_prompt, prompt.user_prompt, previous_text,
            )

        llm = self.router.chat_model(route, settings.text_temperature)
        extraction_route = self.router.extraction_route(route)
        final_round = round_index == self.rounds
        buffer = RoundBuffer(self.overlap, self._clock)

        attempt = 0
        while True:
            messages = prompt.messages
            if buffer.text:
                messages = build_round_prompt(
                    session, strategy, round_index, self.rounds, previous_text, buffer.text,
                ).messages
            try:
                await asyncio.wait_for(
                    self._consume(session, llm, messages, buffer, extraction_route),
                    timeout=self.round_timeout,
                )
                break
            except Exception as e:
                if not is_transient_error(e):
                    raise
                if attempt < self.retry_attempts:
                    delay = backoff_delay(attempt, self.retry_base_delay)
                    attempt += 1
                    logger.warning("Round %d of session %s interrupted (%s), retry %d/%d in %.2fs",
                                   round_index, session.session_id, e, attempt, self.retry_attempts, delay)
                    await asyncio.sleep(delay)
                    continue
                logger.warning("Round %d of session %s interrupted after %d retries: %s",
                               round_index, session.session_id, attempt, e)
                self._recoverable(session.session_id, STREAM_INTERRUPTED, e)
                buffer.interrupted = True
                break

        text, ended = strip_end_marker(buffer.text)
        if buffer.interrupted:
            if session.status == SessionStatus.GENERATING:
                admitted = self.orchestrator.apply(session, parse_text_settings(text))
                logger.info("Fallback parse of interrupted round %d admitted %d nodes", round_index, admitted)
        else:
            tail = buffer.take(final=True)
            if tail and session.status == SessionStatus.GENERATING:
                self.orchestrator.dispatch(session, extraction_route, tail, final=final_round or ended)
        return RoundOutcome(text=text, ended_by_marker=ended)

    async def _pump(self, llm: BaseChatModel, messages: list[BaseMessage], queue: asyncio.Queue):
        try:
            async for chunk in llm.astream(messages):
                text = message_text(chunk)
                if not text or is_heartbeat_chunk(text):
                    continue
                queue.put_nowait(text)
            queue.put_nowait(_END)
        except Exception as e:
            queue.put_nowait(e)

    async def _consume(
        self,
        session: GenerationSession,
        llm: BaseChatModel,
        messages: list[BaseMessage],
        buffer: RoundBuffer,
        route: ModelRoute,
    ):
        """Read the stream, flushing on size or on the wait deadline."""
        queue: asyncio.Queue = asyncio.Queue()
        pump = asyncio.create_task(self._pump(llm, messages, queue))
        try:
            while True:
                wait = max(self.max_wait - buffer.since_flush(), 0.01)
                try:
                    item = await asyncio.wait_for(queue.get(), timeout=wait)
                except asyncio.TimeoutError:
                    self._flush(session, buffer, route)
                    continue
                if item is _END:
                    return
                if isinstance(item, BaseException):
                    raise item
                buffer.append(item)
                if buffer.unflushed >= self.min_batch or buffer.since_flush() >= self.max_wait:
                    self._flush(session, buffer, route)
        finally:
            if not pump.done():
                pump.cancel()
                try:
                    await pump
                except asyncio.CancelledError:
                    pass

    def _flush(self, session: GenerationSession, buffer: RoundBuffer, route: ModelRoute):
        delta = buffer.take()
        if delta and session.status == SessionStatus.GENERATING:
            self.orchestrator.dispatch(session, route, delta, partial=True)
