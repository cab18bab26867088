"""OpenAI-format tool schemas bound to the extraction and tool-loop models."""
from setting_forge.models import SettingType
from setting_forge.models.tool_results import (
    CREATE_SETTING_NODES,
    MARK_GENERATION_COMPLETE,
    MARK_MODIFICATION_COMPLETE,
    TEXT_TO_SETTINGS,
)


SETTING_TYPE_NAMES = [t.value for t in SettingType]

NODE_SCHEMA = {
    "type": "object",
    "properties": {
        "name": {"type": "string", "description": "Node title, at most 100 characters"},
        "type": {"type": "string", "enum": SETTING_TYPE_NAMES},
        "description": {"type": "string", "description": "Concrete description of the node"},
        "temp_id": {"type": "string", "description": "Short token (R1, R1-2) other nodes can use as parent_id"},
        "parent_id": {
            "type": ["string", "null"],
            "description": "Parent tempId or existing node id; null for a top-level node",
        },
        "id": {"type": "string", "description": "Only when updating the node under modification"},
        "attributes": {"type": "object", "description": "Optional extra key/value facts"},
    },
    "required": ["name", "type", "description"],
}


def _function(name: str, description: str, parameters: dict) -> dict:
    return {
        "type": "function",
        "function": {"name": name, "description": description, "parameters": parameters},
    }


TEXT_TO_SETTINGS_TOOL = _function(
    TEXT_TO_SETTINGS,
    "Convert the given setting text into structured nodes.",
    {
        "type": "object",
        "properties": {
            "nodes": {"type": "array", "items": NODE_SCHEMA},
            "complete": {"type": "boolean", "description": "True when the text declared the world complete"},
        },
        "required": ["nodes"],
    },
)

CREATE_SETTING_NODES_TOOL = _function(
    CREATE_SETTING_NODES,
    "Create several setting nodes at once. Parents must be created before or in the same call as children.",
    {
        "type": "object",
        "properties": {"nodes": {"type": "array", "items": NODE_SCHEMA}},
        "required": ["nodes"],
    },
)

_MESSAGE_PARAMS = {
    "type": "object",
    "properties": {"message": {"type": "string", "description": "Short summary of what was done"}},
}

MARK_GENERATION_COMPLETE_TOOL = _function(
    MARK_GENERATION_COMPLETE,
    "Declare that the setting tree is complete.",
    _MESSAGE_PARAMS,
)

MARK_MODIFICATION_COMPLETE_TOOL = _function(
    MARK_MODIFICATION_COMPLETE,
    "Declare that every requested modification is done.",
    _MESSAGE_PARAMS,
)

GENERATION_TOOLS = [CREATE_SETTING_NODES_TOOL, MARK_GENERATION_COMPLETE_TOOL]
MODIFICATION_TOOLS = [CREATE_SETTING_NODES_TOOL, MARK_MODIFICATION_COMPLETE_TOOL]
