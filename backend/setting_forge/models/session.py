"""In-memory generation session model."""
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, Field

from .setting import SettingNode


# Metadata keys
TEXT_STREAM_ENDED = "text_stream_ended"
TEXT_ENDED_AT = "text_ended_at"
STREAM_FINALIZED = "stream_finalized"
TOOL_PENDING_COMPLETE = "tool_pending_complete"
TEMP_ID_MAP = "temp_id_map"
ACCUMULATED_TEXT = "accumulated_text"
MODEL_ROUTE = "model_route"
MODIFICATION_SCOPE = "modification_scope"
CURRENT_NODE_ID = "current_node_id"
AUTO_SAVED_HISTORY_ID = "auto_saved_history_id"
AUTO_SAVED_ROOT_IDS = "auto_saved_root_ids"
SOURCE_HISTORY_ID = "source_history_id"
HYBRID = "hybrid"
USE_PUBLIC_POOL = "use_public_pool"

DEFAULT_TTL = timedelta(hours=24)


class SessionStatus(str, Enum):
    """Lifecycle status of a generation session."""
    INITIALIZING = "INITIALIZING"
    GENERATING = "GENERATING"
    COMPLETED = "COMPLETED"
    SAVED = "SAVED"
    ERROR = "ERROR"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = {SessionStatus.ERROR, SessionStatus.CANCELLED, SessionStatus.SAVED}


class ModificationScope(str, Enum):
    """Boundary a single-node modification may touch."""
    SELF = "self"
    CHILDREN_ONLY = "children_only"
    SELF_AND_CHILDREN = "self_and_children"


class GenerationSession(BaseModel):
    """One prompt-to-tree generation run."""
    session_id: str
    user_id: str
    novel_id: Optional[str] = None
    initial_prompt: str
    strategy_id: str = "default"
    prompt_template_id: Optional[str] = None
    model_config_id: Optional[str] = None
    status: SessionStatus = SessionStatus.INITIALIZING
    nodes: dict[str, SettingNode] = Field(default_factory=dict)
    root_node_ids: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    expires_at: datetime = Field(default_factory=lambda: datetime.utcnow() + DEFAULT_TTL)
    error_message: Optional[str] = None

    def add_node(self, node: SettingNode) -> None:
        """Insert or replace a node, keeping the root list in sync."""
        self.nodes[node.id] = node
        if node.parent_id is None and node.id not in self.root_node_ids:
            self.root_node_ids.append(node.id)

    def children_ids(self, node_id: str) -> list[str]:
        return [n.id for n in self.nodes.values() if n.parent_id == node_id]

    def remove_subtree(self, node_id: str) -> list[str]:
        """Remove a node and all its descendants. Returns removed ids, deepest last."""
        if node_id not in self.nodes:
            return []
        removed = []
        stack = [node_id]
        while stack:
            current = stack.pop()
            removed.append(current)
            stack.extend(self.children_ids(current))
        for nid in removed:
            self.nodes.pop(nid, None)
            if nid in self.root_node_ids:
                self.root_node_ids.remove(nid)
        return removed

    def parent_path(self, parent_id: Optional[str]) -> str:
        """Slash-joined names from the root down to ``parent_id``."""
        if parent_id is None:
            return "/"
        names = []
        seen = set()
        current = parent_id
        while current is not None and current not in seen:
            node = self.nodes.get(current)
            if node is None:
                break
            seen.add(current)
            names.insert(0, node.name)
            current = node.parent_id
        return "/" + "/".join(names)

    def depth_of(self, parent_id: Optional[str]) -> int:
        """Depth a new child of ``parent_id`` would have (roots are depth 1)."""
        depth = 1
        seen = set()
        current = parent_id
        while current is not None and current not in seen:
            node = self.nodes.get(current)
            if node is None:
                break
            seen.add(current)
            depth += 1
            current = node.parent_id
        return depth

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.utcnow()) >= self.expires_at
