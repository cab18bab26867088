"""Models package."""
from .setting import NodeStatus, SettingNode, SettingType, normalize_name, sanitize_node_name
from .session import GenerationSession, ModificationScope, SessionStatus, TERMINAL_STATUSES
from .events import (
    EventType,
    GenerationCompleted,
    GenerationError,
    GenerationEvent,
    GenerationProgress,
    NodeCreated,
    NodeDeleted,
    NodeUpdated,
    SessionStarted,
)
from .tool_results import CandidateNode, CompletionSignal, ToolDirective, parse_tool_call
from .history import SaveResult, SettingHistory

__all__ = [
    "CandidateNode",
    "CompletionSignal",
    "EventType",
    "GenerationCompleted",
    "GenerationError",
    "GenerationEvent",
    "GenerationProgress",
    "GenerationSession",
    "ModificationScope",
    "NodeCreated",
    "NodeDeleted",
    "NodeStatus",
    "NodeUpdated",
    "SaveResult",
    "SessionStarted",
    "SessionStatus",
    "SettingHistory",
    "SettingNode",
    "SettingType",
    "TERMINAL_STATUSES",
    "ToolDirective",
    "normalize_name",
    "parse_tool_call",
    "sanitize_node_name",
]
