"""Agents package."""
from .extractor import extract_settings, message_text
from .writer import RoundPrompt, build_round_prompt, strip_end_marker

__all__ = [
    "RoundPrompt",
    "build_round_prompt",
    "extract_settings",
    "message_text",
    "strip_end_marker",
]
