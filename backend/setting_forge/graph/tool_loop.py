"""LangGraph tool loop used by non-hybrid generation, adjustment and node modification."""
import logging
from typing import Annotated, Any, Callable, Literal, TypedDict

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, ToolMessage
from langgraph.graph import END, StateGraph
from langgraph.graph.message import add_messages

from setting_forge.agents import message_text
from setting_forge.errors import ToolResultParseError
from setting_forge.models.tool_results import CandidateNode, ToolDirective, parse_tool_call, split_directives
from setting_forge.services.fallback_parser import parse_json_settings


logger = logging.getLogger(__name__)

# Receives the candidates of one tool call and returns the text sent back to the model
ApplyCandidates = Callable[[list[CandidateNode]], str]


class ToolLoopState(TypedDict):
    """State carried between the agent and tools nodes."""
    messages: Annotated[list[BaseMessage], add_messages]
    steps: int
    complete: bool
    proposed: int


def _last_ai(state: ToolLoopState) -> AIMessage | None:
    for message in reversed(state["messages"]):
        if isinstance(message, AIMessage):
            return message
    return None


def create_tool_loop(
    llm: BaseChatModel,
    tools: list[dict[str, Any]],
    apply_candidates: ApplyCandidates,
    max_steps: int,
):
    """
    Build the agent/tools loop.

    Graph Structure:
        agent ──(tool calls or JSON)──► tools ──(not complete, steps left)──► agent
          │                               │
          └──────────(nothing)──► END ◄───┘
    """
    bound = llm.bind_tools(tools)

    async def agent_node(state: ToolLoopState) -> dict:
        response = await bound.ainvoke(state["messages"])
        return {"messages": [response], "steps": state["steps"] + 1}

    def tools_node(state: ToolLoopState) -> dict:
        message = _last_ai(state)
        tool_calls = getattr(message, "tool_calls", None) or []
        complete = state["complete"]
        proposed = state["proposed"]

        if not tool_calls:
            # Prose answer carrying JSON ends the loop once applied
            directives = parse_json_settings(message_text(message)) if message else None
            candidates, _ = split_directives(directives or [])
            before = proposed
            if candidates:
                apply_candidates(candidates)
                proposed += len(candidates)
            logger.info("Tool loop applied %d nodes from a JSON answer", proposed - before)
            return {"complete": True, "proposed": proposed}

        results: list[ToolMessage] = []
        for call in tool_calls:
            try:
                directives: list[ToolDirective] = parse_tool_call(call["name"], call.get("args") or {})
            except ToolResultParseError as e:
                results.append(ToolMessage(content=f"Error: {e}", tool_call_id=call["id"]))
                continue
            candidates, call_complete = split_directives(directives)
            summary = "ok"
            if candidates:
                summary = apply_candidates(candidates)
                proposed += len(candidates)
            if call_complete:
                complete = True
                summary = "Completion recorded."
            results.append(ToolMessage(content=summary, tool_call_id=call["id"]))
        return {"messages": results, "complete": complete, "proposed": proposed}

    def route_after_agent(state: ToolLoopState) -> Literal["tools", "__end__"]:
        message = _last_ai(state)
        if message is None:
            return END
        if getattr(message, "tool_calls", None):
            return "tools"
        if parse_json_settings(message_text(message)) is not None:
            return "tools"
        return END

    def route_after_tools(state: ToolLoopState) -> Literal["agent", "__end__"]:
        if state["complete"]:
            return END
        if state["steps"] >= max_steps:
            logger.warning("Tool loop reached %d steps without completing", max_steps)
            return END
        return "agent"

    workflow = StateGraph(ToolLoopState)
    workflow.add_node("agent", agent_node)
    workflow.add_node("tools", tools_node)
    workflow.set_entry_point("agent")
    workflow.add_conditional_edges("agent", route_after_agent, {"tools": "tools", END: END})
    workflow.add_conditional_edges("tools", route_after_tools, {"agent": "agent", END: END})
    return workflow.compile()


async def run_tool_loop(
    llm: BaseChatModel,
    tools: list[dict[str, Any]],
    messages: list[BaseMessage],
    apply_candidates: ApplyCandidates,
    max_steps: int,
) -> ToolLoopState:
    """Run the loop to completion or the step limit and return the final state."""
    graph = create_tool_loop(llm, tools, apply_candidates, max_steps)
    initial: ToolLoopState = {"messages": messages, "steps": 0, "complete": False, "proposed": 0}
    return await graph.ainvoke(initial, config={"recursion_limit": max_steps * 2 + 5})
