"""Extractor agent - turns a text delta into structured node directives."""
import logging
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

from setting_forge.errors import ToolResultParseError
from setting_forge.models.tool_results import TEXT_TO_SETTINGS, ToolDirective, parse_tool_call
from setting_forge.services.fallback_parser import parse_json_settings
from .prompts import (
    END_OF_SETTINGS_MARKER,
    EXTRACTION_FINAL_HINT,
    EXTRACTION_SYSTEM_PROMPT,
    EXTRACTION_TASK_PROMPT,
)
from .tools import SETTING_TYPE_NAMES, TEXT_TO_SETTINGS_TOOL


logger = logging.getLogger(__name__)


def message_text(message: BaseMessage) -> str:
    """Flatten string or content-block message content to plain text."""
    content = message.content
    if isinstance(content, str):
        return content
    parts = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


async def extract_settings(
    llm: BaseChatModel,
    delta: str,
    temp_id_index: str,
    final: bool = False,
) -> list[ToolDirective]:
    """
    Ask the extraction model for ``text_to_settings`` calls covering ``delta``.

    Falls back to JSON found in a prose answer; raises ToolResultParseError
    when neither a valid tool call nor parseable JSON came back.
    """
    bound = llm.bind_tools([TEXT_TO_SETTINGS_TOOL], tool_choice=TEXT_TO_SETTINGS)
    messages = [
        SystemMessage(content=EXTRACTION_SYSTEM_PROMPT.format(
            setting_types=", ".join(SETTING_TYPE_NAMES),
            end_marker=END_OF_SETTINGS_MARKER,
        )),
        HumanMessage(content=EXTRACTION_TASK_PROMPT.format(
            temp_id_index=temp_id_index,
            delta=delta,
            final_hint=EXTRACTION_FINAL_HINT if final else "",
        )),
    ]
    response = await bound.ainvoke(messages)

    tool_calls = getattr(response, "tool_calls", None) or []
    if tool_calls:
        try:
            directives: list[ToolDirective] = []
            for call in tool_calls:
                directives.extend(parse_tool_call(call["name"], call.get("args") or {}))
            return directives
        except ToolResultParseError as e:
            logger.warning("Extraction tool call malformed, trying JSON fallback: %s", e)

    parsed = parse_json_settings(message_text(response))
    if parsed is None:
        raise ToolResultParseError("Extraction model returned no usable text_to_settings call")
    return parsed
