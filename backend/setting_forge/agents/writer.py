"""Writer agent - builds the messages for each streamed free-text round."""
from dataclasses import dataclass
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from setting_forge.models import GenerationSession
from setting_forge.services.strategies import GenerationStrategy
from .prompts import (
    END_OF_SETTINGS_MARKER,
    TEXT_CONTINUE_PROMPT,
    TEXT_RESUME_PROMPT,
    TEXT_SYSTEM_PROMPT,
    TEXT_TASK_PROMPT,
)
from .tools import SETTING_TYPE_NAMES


@dataclass
class RoundPrompt:
    """Messages for one round plus the plain strings used for cost estimates."""
    messages: list[BaseMessage]
    system_prompt: str
    user_prompt: str


def build_round_prompt(
    session: GenerationSession,
    strategy: GenerationStrategy,
    round_index: int,
    total_rounds: int,
    previous_text: str = "",
    partial_text: str = "",
) -> RoundPrompt:
    """
    Build the conversation for one writing round.

    Text from earlier rounds goes back as an assistant turn so the model
    extends the tree instead of repeating it; ``partial_text`` is what this
    round produced before an interruption.
    """
    system_prompt = TEXT_SYSTEM_PROMPT.format(
        strategy_name=strategy.name,
        strategy_description=strategy.description,
        templates_info=strategy.templates_info(),
        rules_info=strategy.rules_info(),
        setting_types=", ".join(SETTING_TYPE_NAMES),
        end_marker=END_OF_SETTINGS_MARKER,
    )
    user_prompt = TEXT_TASK_PROMPT.format(
        prompt=session.initial_prompt,
        round_index=round_index,
        total_rounds=total_rounds,
    )
    messages: list[BaseMessage] = [
        SystemMessage(content=system_prompt),
        HumanMessage(content=user_prompt),
    ]
    if previous_text.strip():
        messages.append(AIMessage(content=previous_text))
        messages.append(HumanMessage(content=TEXT_CONTINUE_PROMPT.format(
            round_index=round_index,
            total_rounds=total_rounds,
        )))
    if partial_text.strip():
        messages.append(AIMessage(content=partial_text))
        messages.append(HumanMessage(content=TEXT_RESUME_PROMPT))
    return RoundPrompt(messages=messages, system_prompt=system_prompt, user_prompt=user_prompt)


def strip_end_marker(text: str) -> tuple[str, bool]:
    """Remove the end-of-settings marker. Returns the clean text and whether it was present."""
    if END_OF_SETTINGS_MARKER not in text:
        return text, False
    return text.replace(END_OF_SETTINGS_MARKER, ""), True
