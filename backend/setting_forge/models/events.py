"""Generation events pushed to event stream subscribers."""
from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Optional, Union
from pydantic import BaseModel, Field

from .setting import SettingNode


class EventType(str, Enum):
    """Discriminator for generation events."""
    SESSION_STARTED = "SESSION_STARTED"
    NODE_CREATED = "NODE_CREATED"
    NODE_UPDATED = "NODE_UPDATED"
    NODE_DELETED = "NODE_DELETED"
    GENERATION_PROGRESS = "GENERATION_PROGRESS"
    GENERATION_ERROR = "GENERATION_ERROR"
    GENERATION_COMPLETED = "GENERATION_COMPLETED"


# Progress messages with special meaning for stream consumers
STREAM_READY = "STREAM_READY"
HEARTBEAT = "HEARTBEAT"

# Completion outcomes
OUTCOME_SUCCESS = "SUCCESS"
OUTCOME_CANCELLED = "CANCELLED"
OUTCOME_MODIFICATION_SUCCESS = "MODIFICATION_SUCCESS"


class BaseEvent(BaseModel):
    """Fields shared by every event; stamped by the event bus on publish."""
    session_id: str = ""
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class SessionStarted(BaseEvent):
    event_type: Literal[EventType.SESSION_STARTED] = EventType.SESSION_STARTED
    initial_prompt: str
    strategy: str


class NodeCreated(BaseEvent):
    event_type: Literal[EventType.NODE_CREATED] = EventType.NODE_CREATED
    node: SettingNode
    parent_path: str


class NodeUpdated(BaseEvent):
    event_type: Literal[EventType.NODE_UPDATED] = EventType.NODE_UPDATED
    node: SettingNode
    previous_version: Optional[SettingNode] = None


class NodeDeleted(BaseEvent):
    event_type: Literal[EventType.NODE_DELETED] = EventType.NODE_DELETED
    deleted_node_ids: list[str]
    reason: str = ""


class GenerationProgress(BaseEvent):
    event_type: Literal[EventType.GENERATION_PROGRESS] = EventType.GENERATION_PROGRESS
    message: str
    total_nodes: Optional[int] = None
    completed_nodes: Optional[int] = None
    progress: Optional[float] = None


class GenerationError(BaseEvent):
    event_type: Literal[EventType.GENERATION_ERROR] = EventType.GENERATION_ERROR
    error_code: str
    error_message: str
    node_id: Optional[str] = None
    recoverable: bool = True


class GenerationCompleted(BaseEvent):
    event_type: Literal[EventType.GENERATION_COMPLETED] = EventType.GENERATION_COMPLETED
    total_nodes_generated: int
    generation_time_ms: int
    status: str = OUTCOME_SUCCESS


GenerationEvent = Annotated[
    Union[
        SessionStarted,
        NodeCreated,
        NodeUpdated,
        NodeDeleted,
        GenerationProgress,
        GenerationError,
        GenerationCompleted,
    ],
    Field(discriminator="event_type"),
]
