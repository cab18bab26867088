"""Typed variants for tool-call payloads returned by the extraction model."""
import logging
from typing import Any, Literal, Optional, Union
from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator

from setting_forge.errors import ToolResultParseError


logger = logging.getLogger(__name__)

TEXT_TO_SETTINGS = "text_to_settings"
CREATE_SETTING_NODE = "create_setting_node"
CREATE_SETTING_NODES = "create_setting_nodes"
MARK_GENERATION_COMPLETE = "mark_generation_complete"
MARK_MODIFICATION_COMPLETE = "mark_modification_complete"

_NULL_TOKENS = {"", "null", "none", "nil", "root", "-"}


def _clean_ref(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if text.lower() in _NULL_TOKENS:
        return None
    return text


class CandidateNode(BaseModel):
    """A node proposed by a tool call, before resolution and validation."""
    kind: Literal["candidate"] = "candidate"
    name: str = ""
    type: str = ""
    description: str = ""
    parent_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("parent_id", "parentId", "parent_temp_id", "parentTempId"),
    )
    temp_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("temp_id", "tempId"),
    )
    id: Optional[str] = None
    attributes: dict[str, Any] = Field(default_factory=dict)

    @field_validator("name", "type", "description", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value).strip()

    @field_validator("parent_id", "temp_id", "id", mode="before")
    @classmethod
    def _coerce_ref(cls, value: Any) -> Optional[str]:
        return _clean_ref(value)

    @field_validator("attributes", mode="before")
    @classmethod
    def _coerce_attributes(cls, value: Any) -> dict[str, Any]:
        return value if isinstance(value, dict) else {}


class CompletionSignal(BaseModel):
    """The model declared that it has nothing more to add."""
    kind: Literal["complete"] = "complete"
    message: Optional[str] = None


ToolDirective = Union[CandidateNode, CompletionSignal]


def _parse_node(raw: Any) -> CandidateNode:
    if not isinstance(raw, dict):
        raise ToolResultParseError(f"Node entry must be an object, got {type(raw).__name__}")
    try:
        return CandidateNode.model_validate(raw)
    except ValidationError as e:
        raise ToolResultParseError(f"Invalid node entry: {e.errors()[:1]}") from e


def parse_nodes_payload(args: dict[str, Any]) -> list[ToolDirective]:
    """Parse a ``{nodes|settings: [...], complete?}`` payload."""
    if not isinstance(args, dict):
        raise ToolResultParseError("Tool arguments must be an object")
    nodes = args.get("nodes")
    if not nodes:
        nodes = args.get("settings")
    if nodes is None:
        nodes = []
    if not isinstance(nodes, list):
        raise ToolResultParseError("'nodes' must be a list")

    directives: list[ToolDirective] = [_parse_node(item) for item in nodes]
    if args.get("complete") is True:
        directives.append(CompletionSignal(message=args.get("message")))
    return directives


def parse_tool_call(name: str, args: dict[str, Any]) -> list[ToolDirective]:
    """Validate one tool call into directives. Raises ToolResultParseError."""
    if name in (TEXT_TO_SETTINGS, CREATE_SETTING_NODES):
        return parse_nodes_payload(args)
    if name == CREATE_SETTING_NODE:
        return [_parse_node(args)]
    if name in (MARK_GENERATION_COMPLETE, MARK_MODIFICATION_COMPLETE):
        message = args.get("message") if isinstance(args, dict) else None
        return [CompletionSignal(message=message)]
    raise ToolResultParseError(f"Unknown tool: {name}")


def split_directives(directives: list[ToolDirective]) -> tuple[list[CandidateNode], bool]:
    """Separate candidates from completion signals."""
    candidates = [d for d in directives if isinstance(d, CandidateNode)]
    complete = any(isinstance(d, CompletionSignal) for d in directives)
    return candidates, complete
