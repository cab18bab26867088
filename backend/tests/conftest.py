"""Shared fixtures: scripted chat models, an in-memory history store, and a wired service."""
import asyncio
import inspect
from typing import Any, AsyncIterator, Callable, Optional

import pytest
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, AIMessageChunk, BaseMessage
from langchain_core.outputs import ChatGeneration, ChatGenerationChunk, ChatResult
from pydantic import Field
from sqlalchemy.pool import StaticPool
from sqlmodel import create_engine

from setting_forge.agents.prompts import END_OF_SETTINGS_MARKER
from setting_forge.config import settings
from setting_forge.db import init_db
from setting_forge.models import GenerationSession, SessionStatus
from setting_forge.models.tool_results import TEXT_TO_SETTINGS
from setting_forge.services.admission import NodeAdmitter
from setting_forge.services.event_bus import EventBus
from setting_forge.services.fallback_parser import parse_text_settings
from setting_forge.services.generation_service import GenerationService, build_generation_service
from setting_forge.services.history_service import HistoryService
from setting_forge.services.model_router import ModelConfig, ModelRoute, ModelRouter
from setting_forge.services.session_store import SessionStore
from setting_forge.services.strategies import StrategyRegistry
from setting_forge.services.validation import ValidationEngine


WRITER_MODEL = "writer-test"


class ScriptedChatModel(BaseChatModel):
    """
    Chat model driven by scripts instead of a provider.

    ``streams`` feeds ``astream`` one list per call (strings are chunks,
    exceptions are raised in place). ``handler`` or ``responses`` answer
    ``ainvoke``; a handler may be async.
    """

    streams: list[list[Any]] = Field(default_factory=list)
    responses: list[AIMessage] = Field(default_factory=list)
    handler: Optional[Callable[[list[BaseMessage]], Any]] = None
    calls: list[list[BaseMessage]] = Field(default_factory=list)
    bound_tools: list[Any] = Field(default_factory=list)

    @property
    def _llm_type(self) -> str:
        return "scripted"

    def bind_tools(self, tools, tool_choice=None, **kwargs):
        self.bound_tools = list(tools)
        return self

    def _generate(self, messages, stop=None, run_manager=None, **kwargs) -> ChatResult:
        raise NotImplementedError("ScriptedChatModel is async only")

    async def _agenerate(self, messages, stop=None, run_manager=None, **kwargs) -> ChatResult:
        self.calls.append(list(messages))
        if self.handler is not None:
            message = self.handler(messages)
            if inspect.isawaitable(message):
                message = await message
        elif self.responses:
            message = self.responses.pop(0)
        else:
            message = AIMessage(content="")
        return ChatResult(generations=[ChatGeneration(message=message)])

    async def _astream(self, messages, stop=None, run_manager=None, **kwargs) -> AsyncIterator[ChatGenerationChunk]:
        self.calls.append(list(messages))
        script = self.streams.pop(0) if self.streams else []
        for item in script:
            if isinstance(item, BaseException):
                raise item
            await asyncio.sleep(0)
            yield ChatGenerationChunk(message=AIMessageChunk(content=item))


def node_text(temp_id: str, name: str, node_type: str, parent: Optional[str], content: str) -> str:
    """One node in the streaming plain-text format."""
    return f"Node {temp_id} Title: {name} [{node_type}]\nParent: {parent or 'null'}\nContent: {content}\n\n"


def tool_call(name: str, args: dict, call_id: str = "call_1") -> AIMessage:
    return AIMessage(content="", tool_calls=[{"name": name, "args": args, "id": call_id}])


def extraction_from_text(messages: list[BaseMessage]) -> AIMessage:
    """Extraction stand-in: reads the delta out of the prompt and reports its nodes."""
    prompt = messages[-1].content
    delta = prompt.split("New text:\n", 1)[-1]
    nodes = [
        {
            "name": c.name,
            "type": c.type,
            "description": c.description,
            "temp_id": c.temp_id,
            "parent_id": c.parent_id,
        }
        for c in parse_text_settings(delta)
    ]
    return tool_call(TEXT_TO_SETTINGS, {"nodes": nodes, "complete": END_OF_SETTINGS_MARKER in delta})


def scripted_router(writer: ScriptedChatModel, extractor: ScriptedChatModel) -> ModelRouter:
    """Router whose text route gets ``writer`` and extraction route gets ``extractor``."""

    def factory(route: ModelRoute, temperature: float) -> BaseChatModel:
        return writer if route.model_name == WRITER_MODEL else extractor

    router = ModelRouter(model_factory=factory)
    router.register_public(ModelConfig(config_id="default", model_name=WRITER_MODEL))
    return router


@pytest.fixture
def engine():
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(test_engine)
    return test_engine


@pytest.fixture
def history(engine) -> HistoryService:
    return HistoryService(engine)


@pytest.fixture
def writer() -> ScriptedChatModel:
    return ScriptedChatModel()


@pytest.fixture
def extractor() -> ScriptedChatModel:
    return ScriptedChatModel(handler=extraction_from_text)


@pytest.fixture
def service(writer, extractor, history) -> GenerationService:
    """Fully wired service on scripted models with fast timings."""
    svc = build_generation_service(router=scripted_router(writer, extractor), history=history)
    svc.gate.buffer_seconds = 0.01
    svc.producer.min_batch = 100_000
    svc.producer.retry_base_delay = 0.001
    svc.orchestrator.retry_base_delay = 0.001
    return svc


@pytest.fixture
def store() -> SessionStore:
    return SessionStore()


@pytest.fixture
def bus() -> EventBus:
    return EventBus(replay_size=settings.event_replay_size, heartbeat_interval=0.05)


@pytest.fixture
def admitter(store, bus) -> NodeAdmitter:
    return NodeAdmitter(store, bus, ValidationEngine(), StrategyRegistry())


@pytest.fixture
def session(store, bus) -> GenerationSession:
    """A GENERATING session with an open generation channel."""
    s = store.create("user-1", None, "A floating archipelago ruled by cartographers", "default")
    s.status = SessionStatus.GENERATING
    store.save(s)
    bus.open(s.session_id)
    return s
