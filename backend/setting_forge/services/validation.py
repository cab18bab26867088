"""Structural validation and duplicate detection for candidate nodes."""
import logging
from dataclasses import dataclass, field
from typing import Optional

from setting_forge.config import settings
from setting_forge.models import GenerationSession, ModificationScope, SettingType, normalize_name


logger = logging.getLogger(__name__)

PLACEHOLDER_MARKERS = ("tbd", "todo", "placeholder", "to be added", "lorem ipsum", "待补充", "待定")


@dataclass
class ValidationResult:
    """Outcome of validating one candidate."""
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    node_type: Optional[SettingType] = None

    @property
    def valid(self) -> bool:
        return not self.errors


def looks_like_placeholder(description: str) -> bool:
    text = description.strip().lower()
    if not text or set(text) <= {".", "…", " "}:
        return True
    return any(marker in text for marker in PLACEHOLDER_MARKERS)


class ValidationEngine:
    """Rule checker invoked by every node admission path."""

    def __init__(
        self,
        name_max_length: int | None = None,
        description_max_length: int | None = None,
        description_min_length: int | None = None,
    ):
        self.name_max_length = name_max_length or settings.node_name_max_length
        self.description_max_length = description_max_length or settings.node_description_max_length
        self.description_min_length = description_min_length or settings.node_description_min_length

    def validate_node(
        self,
        session: GenerationSession,
        *,
        node_id: str,
        parent_id: Optional[str],
        name: str,
        type_value: str,
        description: str,
        updating_node_id: Optional[str] = None,
    ) -> ValidationResult:
        """
        Check a candidate against the session tree.

        ``updating_node_id`` is the node currently under modification: a
        candidate carrying that id replaces the node instead of being a
        duplicate, but it must keep its parent.
        """
        result = ValidationResult()
        name = (name or "").strip()
        description = (description or "").strip()

        if not name:
            result.errors.append("Node name is required")
        elif len(name) > self.name_max_length:
            result.errors.append(f"Node name exceeds {self.name_max_length} characters")

        if not description:
            result.errors.append("Node description is required")
        else:
            if len(description) > self.description_max_length:
                result.errors.append(f"Node description exceeds {self.description_max_length} characters")
            if parent_id is not None and len(description) < self.description_min_length:
                result.errors.append(
                    f"Node description must be at least {self.description_min_length} characters"
                )
            if looks_like_placeholder(description):
                result.warnings.append("Node description looks like placeholder text")

        result.node_type = SettingType.parse(type_value)
        if result.node_type is None:
            result.errors.append(f"Unrecognized setting type: {type_value or '(empty)'}")

        existing = session.nodes.get(node_id)
        if existing is not None:
            if node_id != updating_node_id:
                result.errors.append(f"Node id already exists: {node_id}")
            elif existing.parent_id != parent_id:
                result.errors.append("Parent mismatch for update")

        if parent_id is not None:
            if parent_id not in session.nodes:
                result.errors.append(f"Parent node not found: {parent_id}")
            elif self._creates_cycle(session, node_id, parent_id):
                result.errors.append("Parent reference would create a cycle")

        if name and result.node_type is not None:
            duplicate = self._find_duplicate(session, node_id, parent_id, name, result.node_type)
            if duplicate is not None:
                result.errors.append(
                    f"Duplicate node '{name}' ({result.node_type.value}) under the same parent"
                )

        if result.warnings:
            logger.warning("Node %s (%s) warnings: %s", node_id, name, result.warnings)
        return result

    def check_scope(
        self,
        *,
        node_id: str,
        parent_id: Optional[str],
        scope: ModificationScope,
        current_node_id: str,
    ) -> Optional[str]:
        """Return a violation message when the candidate leaves the declared scope."""
        is_self = node_id == current_node_id
        is_child = parent_id is not None and parent_id == current_node_id
        if scope == ModificationScope.SELF:
            violates = not is_self or is_child
        elif scope == ModificationScope.CHILDREN_ONLY:
            violates = is_self or not is_child
        else:
            violates = not (is_self or is_child)
        if violates:
            return f"Operation outside the allowed scope (scope={scope.value}), ignored."
        return None

    @staticmethod
    def _creates_cycle(session: GenerationSession, node_id: str, parent_id: str) -> bool:
        visited = set()
        current: Optional[str] = parent_id
        while current is not None:
            if current == node_id or current in visited:
                return True
            visited.add(current)
            parent = session.nodes.get(current)
            current = parent.parent_id if parent is not None else None
        return False

    @staticmethod
    def _find_duplicate(
        session: GenerationSession,
        node_id: str,
        parent_id: Optional[str],
        name: str,
        node_type: SettingType,
    ) -> Optional[str]:
        key = normalize_name(name)
        for node in session.nodes.values():
            if node.id == node_id:
                continue
            if node.parent_id == parent_id and node.type == node_type and normalize_name(node.name) == key:
                return node.id
        return None
