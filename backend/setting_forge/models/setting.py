"""Setting node model and related enums."""
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, Field


class SettingType(str, Enum):
    """Closed set of world-building categories."""
    CHARACTER = "CHARACTER"
    LOCATION = "LOCATION"
    ITEM = "ITEM"
    LORE = "LORE"
    FACTION = "FACTION"
    EVENT = "EVENT"
    CONCEPT = "CONCEPT"
    CREATURE = "CREATURE"
    MAGIC_SYSTEM = "MAGIC_SYSTEM"
    TECHNOLOGY = "TECHNOLOGY"
    CULTURE = "CULTURE"
    HISTORY = "HISTORY"
    ORGANIZATION = "ORGANIZATION"
    WORLDVIEW = "WORLDVIEW"
    PLEASURE_POINT = "PLEASURE_POINT"
    ANTICIPATION_HOOK = "ANTICIPATION_HOOK"
    THEME = "THEME"
    TONE = "TONE"
    STYLE = "STYLE"
    TROPE = "TROPE"
    PLOT_DEVICE = "PLOT_DEVICE"
    POWER_SYSTEM = "POWER_SYSTEM"
    GOLDEN_FINGER = "GOLDEN_FINGER"
    TIMELINE = "TIMELINE"
    RELIGION = "RELIGION"
    POLITICS = "POLITICS"
    ECONOMY = "ECONOMY"
    GEOGRAPHY = "GEOGRAPHY"
    OTHER = "OTHER"

    @classmethod
    def parse(cls, value: Any) -> Optional["SettingType"]:
        """Case-insensitive lookup. Returns None for unknown values."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        key = value.strip().upper().replace("-", "_").replace(" ", "_")
        try:
            return cls(key)
        except ValueError:
            return None


class NodeStatus(str, Enum):
    """Generation status of a single node."""
    COMPLETED = "COMPLETED"
    MODIFIED = "MODIFIED"
    ERROR = "ERROR"


class SettingNode(BaseModel):
    """One world-building entity in a session's tree."""
    id: str
    parent_id: Optional[str] = None
    name: str
    type: SettingType
    description: str
    attributes: dict[str, Any] = Field(default_factory=dict)
    generation_status: NodeStatus = NodeStatus.COMPLETED


def sanitize_node_name(name: str | None) -> str | None:
    """Replace '/' with the full-width slash so names never read as paths."""
    if name is None:
        return None
    return name.replace("/", "／")


def normalize_name(name: str | None) -> str:
    """Normalization used for duplicate detection."""
    if not name:
        return ""
    return " ".join(name.replace("　", " ").split()).casefold()
