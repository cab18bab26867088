"""Best-effort parsers that turn raw model output into candidate nodes."""
import json
import logging
import re
from typing import Any, Optional

from setting_forge.errors import ToolResultParseError
from setting_forge.models.tool_results import CandidateNode, ToolDirective, parse_nodes_payload


logger = logging.getLogger(__name__)

_NODE_RE = re.compile(
    r"^\s*(?:[-*#>]+\s*)?Node\s+(?P<tid>[\w\-]+)\s*(?:Title|Name)\s*[:：]\s*(?P<name>.+?)\s*$",
    re.IGNORECASE,
)
_TYPE_SUFFIX_RE = re.compile(r"^(?P<name>.*?)\s*\[(?P<type>[A-Za-z_ \-]+)\]\s*$")
_PARENT_RE = re.compile(r"^\s*Parent\s*[:：]\s*(?P<parent>[^\s\[(]+)?", re.IGNORECASE)
_TYPE_RE = re.compile(r"^\s*Type\s*[:：]\s*(?P<type>[A-Za-z_ \-]+?)\s*$", re.IGNORECASE)
_CONTENT_RE = re.compile(r"^\s*(?:Content|Description)\s*[:：]\s*(?P<text>.*)$", re.IGNORECASE)


def extract_json(text: str) -> Optional[str]:
    """Pull the first JSON document out of a fenced block or free text."""
    t = text.strip()
    fence = t.find("```json")
    if fence >= 0:
        start = fence + len("```json")
        end = t.find("```", start)
        if end > start:
            return t[start:end].strip()

    starts = [i for i in (t.find("{"), t.find("[")) if i >= 0]
    if not starts:
        return None
    open_idx = min(starts)
    opener = t[open_idx]
    closer = "}" if opener == "{" else "]"
    depth = 0
    in_string = False
    escaped = False
    for i in range(open_idx, len(t)):
        c = t[i]
        if in_string:
            if escaped:
                escaped = False
            elif c == "\\":
                escaped = True
            elif c == '"':
                in_string = False
            continue
        if c == '"':
            in_string = True
        elif c == opener:
            depth += 1
        elif c == closer:
            depth -= 1
            if depth == 0:
                return t[open_idx:i + 1]
    return None


def _payload_from_json(data: Any) -> Optional[dict[str, Any]]:
    if isinstance(data, dict):
        return data
    if isinstance(data, list) and data:
        for element in data:
            if isinstance(element, dict) and isinstance(element.get("nodes"), list):
                return element
        if all(isinstance(element, dict) for element in data):
            return {"nodes": data}
    return None


def parse_json_settings(raw_text: Optional[str]) -> Optional[list[ToolDirective]]:
    """
    Parse ``text_to_settings`` arguments out of free text.

    Accepts ``{nodes|settings: [...], complete?}``, a bare list of nodes,
    or a list of ``{nodes: [...]}`` objects. Returns None when nothing
    usable is found.
    """
    if not raw_text or not raw_text.strip():
        return None
    document = extract_json(raw_text)
    if not document:
        return None
    try:
        data = json.loads(document)
    except json.JSONDecodeError:
        logger.debug("JSON fallback could not decode document")
        return None
    payload = _payload_from_json(data)
    if payload is None:
        return None
    try:
        return parse_nodes_payload(payload)
    except ToolResultParseError as e:
        logger.debug("JSON fallback payload rejected: %s", e)
        return None


def parse_text_settings(text: Optional[str], drop_trailing: bool = False) -> list[CandidateNode]:
    """
    Parse the streaming plain-text node format::

        Node R1 Title: Elena Vance [CHARACTER]
        Parent: null
        Content: A disgraced cartographer ...

    Type defaults to OTHER when neither a bracket suffix nor a Type line is given.
    With ``drop_trailing`` the last node is left out unless a blank line
    closes it, since a mid-stream delta may have cut it short.
    """
    if not text:
        return []
    candidates: list[CandidateNode] = []
    current: Optional[dict[str, Any]] = None
    in_content = False

    def flush():
        if current and current.get("name") and current.get("description", "").strip():
            candidates.append(CandidateNode.model_validate(current))

    for line in text.splitlines():
        node_match = _NODE_RE.match(line)
        if node_match:
            flush()
            name = node_match.group("name")
            node_type = "OTHER"
            type_match = _TYPE_SUFFIX_RE.match(name)
            if type_match:
                name = type_match.group("name")
                node_type = type_match.group("type")
            current = {"temp_id": node_match.group("tid"), "name": name, "type": node_type,
                       "description": "", "parent_id": None}
            in_content = False
            continue
        if current is None:
            continue
        if not line.strip():
            in_content = False
            continue
        parent_match = _PARENT_RE.match(line)
        if parent_match and not in_content:
            current["parent_id"] = parent_match.group("parent")
            continue
        type_match = _TYPE_RE.match(line)
        if type_match and not in_content:
            current["type"] = type_match.group("type")
            continue
        content_match = _CONTENT_RE.match(line)
        if content_match:
            current["description"] = content_match.group("text").strip()
            in_content = True
            continue
        if in_content:
            current["description"] = (current["description"] + "\n" + line.strip()).strip()
    if drop_trailing and not re.search(r"\n[ \t]*\n\s*\Z", text):
        return candidates
    flush()
    return candidates
