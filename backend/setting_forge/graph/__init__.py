"""Graph package."""
from .tool_loop import ToolLoopState, create_tool_loop, run_tool_loop

__all__ = ["ToolLoopState", "create_tool_loop", "run_tool_loop"]
