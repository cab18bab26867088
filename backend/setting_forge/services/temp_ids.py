"""Session-scoped mapping from transient batch tokens to permanent node ids."""
import logging
from typing import Optional

from setting_forge.config import settings
from setting_forge.models import GenerationSession
from setting_forge.models.session import TEMP_ID_MAP


logger = logging.getLogger(__name__)

EMPTY_INDEX = "(none)"


def temp_id_map(session: GenerationSession) -> dict[str, str]:
    """The session's token map, created on first use."""
    mapping = session.metadata.get(TEMP_ID_MAP)
    if not isinstance(mapping, dict):
        mapping = {}
        session.metadata[TEMP_ID_MAP] = mapping
    return mapping


def resolve(session: GenerationSession, token: Optional[str]) -> Optional[str]:
    if not token:
        return None
    return temp_id_map(session).get(token)


def bind(session: GenerationSession, token: str, node_id: str) -> str:
    """Bind a token once. Returns the id the token resolves to afterwards."""
    mapping = temp_id_map(session)
    bound = mapping.setdefault(token, node_id)
    if bound != node_id:
        logger.debug("Temp id %s already bound to %s, keeping it", token, bound)
    return bound


def build_index(
    session: GenerationSession,
    max_lines: int | None = None,
    max_chars: int | None = None,
) -> str:
    """
    Render bound tokens as ``token | name | type`` lines for the extraction
    prompt, so the model links children to existing nodes instead of
    re-creating them.
    """
    max_lines = max_lines or settings.temp_id_index_max_lines
    max_chars = max_chars or settings.temp_id_index_max_chars
    lines = []
    total = 0
    for token, node_id in temp_id_map(session).items():
        node = session.nodes.get(node_id)
        if node is None:
            continue
        line = f"{token} | {node.name} | {node.type.value}"
        if len(lines) >= max_lines or total + len(line) + 1 > max_chars:
            break
        lines.append(line)
        total += len(line) + 1
    return "\n".join(lines) if lines else EMPTY_INDEX


def rebuild(session: GenerationSession) -> int:
    """
    Bind positional tokens (``R1``, ``R1-2``, ...) to an existing tree that
    carries none, such as one restored from history. Returns how many were bound.
    """
    count = 0
    stack = [(f"R{i}", root_id) for i, root_id in reversed(list(enumerate(session.root_node_ids, start=1)))]
    while stack:
        token, node_id = stack.pop()
        if node_id not in session.nodes:
            continue
        if bind(session, token, node_id) == node_id:
            count += 1
        children = session.children_ids(node_id)
        stack.extend((f"{token}-{i}", child) for i, child in reversed(list(enumerate(children, start=1))))
    return count
