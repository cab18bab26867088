"""Tests for the LangGraph tool loop."""
from langchain_core.messages import AIMessage, HumanMessage, ToolMessage

from setting_forge.agents.tools import GENERATION_TOOLS
from setting_forge.graph import run_tool_loop
from setting_forge.models.tool_results import CREATE_SETTING_NODES, MARK_GENERATION_COMPLETE
from conftest import ScriptedChatModel, tool_call


NODE = {"name": "Characters", "type": "CHARACTER", "description": "People of the archipelago"}


class Recorder:
    def __init__(self):
        self.batches = []

    def __call__(self, candidates):
        self.batches.append(candidates)
        return f"created {len(candidates)}, updated 0"


async def run(llm, max_steps=5):
    recorder = Recorder()
    state = await run_tool_loop(llm, GENERATION_TOOLS, [HumanMessage(content="Build a world")], recorder, max_steps)
    return state, recorder


class TestToolLoop:
    """Agent and tools alternate until completion or the step limit."""

    async def test_tool_calls_then_completion(self):
        llm = ScriptedChatModel(responses=[
            tool_call(CREATE_SETTING_NODES, {"nodes": [NODE]}),
            tool_call(MARK_GENERATION_COMPLETE, {}, call_id="call_2"),
        ])
        state, recorder = await run(llm)

        assert state["complete"]
        assert state["steps"] == 2
        assert state["proposed"] == 1
        assert [c.name for c in recorder.batches[0]] == ["Characters"]
        tool_results = [m for m in state["messages"] if isinstance(m, ToolMessage)]
        assert [m.content for m in tool_results] == ["created 1, updated 0", "Completion recorded."]
        assert llm.bound_tools == GENERATION_TOOLS

    async def test_malformed_call_is_reported_back(self):
        llm = ScriptedChatModel(responses=[
            tool_call(CREATE_SETTING_NODES, {"nodes": "oops"}),
            tool_call(MARK_GENERATION_COMPLETE, {}, call_id="call_2"),
        ])
        state, recorder = await run(llm)

        assert not recorder.batches
        feedback = llm.calls[1][-1]
        assert isinstance(feedback, ToolMessage)
        assert feedback.content.startswith("Error:")
        assert state["complete"]

    async def test_json_answer_is_applied(self):
        llm = ScriptedChatModel(responses=[
            AIMessage(content='```json\n{"nodes": [{"name": "Characters", "type": "CHARACTER", '
                              '"description": "People"}]}\n```'),
        ])
        state, recorder = await run(llm)

        assert state["complete"]
        assert state["proposed"] == 1
        assert len(recorder.batches) == 1

    async def test_plain_prose_ends_without_completion(self):
        llm = ScriptedChatModel(responses=[AIMessage(content="I would rather write a poem.")])
        state, recorder = await run(llm)

        assert not state["complete"]
        assert state["steps"] == 1
        assert not recorder.batches

    async def test_step_limit(self):
        llm = ScriptedChatModel(handler=lambda messages: tool_call(CREATE_SETTING_NODES, {"nodes": [NODE]}))
        state, recorder = await run(llm, max_steps=3)

        assert not state["complete"]
        assert state["steps"] == 3
        assert len(recorder.batches) == 3
