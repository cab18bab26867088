"""Tests for the extractor agent and the extraction orchestrator."""
import asyncio

import pytest
from langchain_core.messages import AIMessage

from setting_forge.agents import extract_settings
from setting_forge.errors import ToolResultParseError
from setting_forge.models import CandidateNode, CompletionSignal, EventType, SessionStatus
from setting_forge.models.tool_results import TEXT_TO_SETTINGS
from setting_forge.services.orchestrator import EXTRACTION_FAILED
from conftest import ScriptedChatModel, node_text, tool_call


DELTA = node_text("R1", "Characters", "CHARACTER", None, "People of the archipelago.")


class TestExtractor:
    """One extraction call."""

    async def test_tool_call(self):
        llm = ScriptedChatModel(responses=[tool_call(TEXT_TO_SETTINGS, {
            "nodes": [{"name": "Characters", "type": "CHARACTER", "description": "People", "tempId": "R1"}],
            "complete": True,
        })])
        directives = await extract_settings(llm, DELTA, "(none)", final=True)

        assert isinstance(directives[0], CandidateNode)
        assert isinstance(directives[-1], CompletionSignal)
        prompt = llm.calls[0][-1].content
        assert "(none)" in prompt
        assert "final part of the text" in prompt

    async def test_json_in_prose(self):
        llm = ScriptedChatModel(responses=[AIMessage(
            content='{"nodes": [{"name": "Characters", "type": "CHARACTER", "description": "People"}]}'
        )])
        directives = await extract_settings(llm, DELTA, "(none)")
        assert [d.name for d in directives] == ["Characters"]

    async def test_malformed_call_falls_back_to_json(self):
        llm = ScriptedChatModel(responses=[AIMessage(
            content='[{"name": "Characters", "type": "CHARACTER", "description": "People"}]',
            tool_calls=[{"name": TEXT_TO_SETTINGS, "args": {"nodes": "broken"}, "id": "call_1"}],
        )])
        directives = await extract_settings(llm, DELTA, "(none)")
        assert len(directives) == 1

    async def test_nothing_usable(self):
        llm = ScriptedChatModel(responses=[AIMessage(content="Sorry, I cannot help with that.")])
        with pytest.raises(ToolResultParseError):
            await extract_settings(llm, DELTA, "(none)")


def live_session(service):
    session = service.store.create("user-1", None, "prompt", "default")
    session.status = SessionStatus.GENERATING
    service.bus.open(session.session_id)
    return session


def extraction_route(service):
    return service.router.extraction_route(service.router.resolve("user-1", None, True))


def errors_of(service, session):
    return [e for e in service.bus.channel(session.session_id).history
            if e.event_type == EventType.GENERATION_ERROR]


class TestOrchestrator:
    """Fire-and-forget extraction tasks."""

    async def test_unusable_result_uses_local_parse(self, service, extractor):
        extractor.handler = lambda messages: AIMessage(content="no structure here")
        session = live_session(service)

        await service.orchestrator.dispatch(session, extraction_route(service), DELTA)

        assert [n.name for n in session.nodes.values()] == ["Characters"]
        assert not errors_of(service, session)

    async def test_failed_extraction_reports_and_uses_local_parse(self, service, extractor):
        def broken(messages):
            raise RuntimeError("extraction backend unavailable")

        extractor.handler = broken
        session = live_session(service)

        await service.orchestrator.dispatch(session, extraction_route(service), DELTA)

        errors = errors_of(service, session)
        assert errors[0].error_code == EXTRACTION_FAILED
        assert errors[0].recoverable
        assert len(session.nodes) == 1

    async def test_cut_off_node_waits_for_next_delta(self, service, extractor):
        def broken(messages):
            raise RuntimeError("extraction backend unavailable")

        extractor.handler = broken
        session = live_session(service)
        full = node_text("R1", "Elena Vance", "CHARACTER", None,
                         "A disgraced cartographer who maps the winds of the archipelago.")
        route = extraction_route(service)

        await service.orchestrator.dispatch(session, route, full[:full.index("maps")], partial=True)
        assert not session.nodes

        await service.orchestrator.dispatch(session, route, full)
        elena = next(iter(session.nodes.values()))
        assert elena.description == "A disgraced cartographer who maps the winds of the archipelago."

    async def test_tasks_are_tracked_by_the_gate(self, service, extractor):
        release = asyncio.Event()

        async def slow(messages):
            await release.wait()
            return AIMessage(content="")

        extractor.handler = slow
        session = live_session(service)
        service.orchestrator.dispatch(session, extraction_route(service), DELTA)
        await asyncio.sleep(0)

        assert service.gate.inflight_count(session.session_id) == 1
        assert service.orchestrator.pending == 1
        release.set()
        await service.orchestrator.drain()
        assert service.gate.inflight_count(session.session_id) == 0
        assert service.orchestrator.pending == 0

    async def test_results_after_cancel_are_discarded(self, service, extractor):
        session = live_session(service)
        session.status = SessionStatus.CANCELLED

        await service.orchestrator.dispatch(session, extraction_route(service), DELTA)

        assert not session.nodes
