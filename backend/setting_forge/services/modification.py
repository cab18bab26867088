"""Scoped node modification, session adjustment, and direct node edits."""
import asyncio
import logging
import time
from typing import Optional

from langchain_core.messages import HumanMessage, SystemMessage

from setting_forge.agents.prompts import (
    ADJUST_TASK_PROMPT,
    GENERATION_TOOL_SYSTEM_PROMPT,
    MODIFICATION_SYSTEM_PROMPT,
    MODIFICATION_TASK_PROMPT,
    SCOPE_RULES_CHILDREN_ONLY,
    SCOPE_RULES_SELF,
    SCOPE_RULES_SELF_AND_CHILDREN,
)
from setting_forge.agents.tools import GENERATION_TOOLS, MODIFICATION_TOOLS, SETTING_TYPE_NAMES
from setting_forge.config import settings
from setting_forge.errors import (
    InvalidSessionStateError,
    NodeNotFoundError,
    ValidationFailed,
    safe_error_message,
)
from setting_forge.graph import run_tool_loop
from setting_forge.models import (
    GenerationCompleted,
    GenerationError,
    GenerationSession,
    ModificationScope,
    NodeDeleted,
    NodeStatus,
    NodeUpdated,
    SessionStatus,
    SettingNode,
)
from setting_forge.models.events import OUTCOME_MODIFICATION_SUCCESS, OUTCOME_SUCCESS
from setting_forge.models.session import CURRENT_NODE_ID, MODIFICATION_SCOPE, USE_PUBLIC_POOL
from setting_forge.models.tool_results import CandidateNode
from . import temp_ids
from .admission import AdmissionContext, AdmissionReport, NodeAdmitter
from .event_bus import EventBus, StreamKind
from .model_router import ModelRouter
from .session_store import SessionStore
from .strategies import StrategyRegistry


logger = logging.getLogger(__name__)

MODIFICATION_FAILED = "MODIFICATION_FAILED"
ADJUST_FAILED = "ADJUST_FAILED"
ADJUST_TIMEOUT = "ADJUST_TIMEOUT"

_SUMMARY_LENGTH = 140

_SCOPE_RULES = {
    ModificationScope.SELF: SCOPE_RULES_SELF,
    ModificationScope.CHILDREN_ONLY: SCOPE_RULES_CHILDREN_ONLY,
    ModificationScope.SELF_AND_CHILDREN: SCOPE_RULES_SELF_AND_CHILDREN,
}


def render_tree(session: GenerationSession) -> str:
    """Readable outline of the tree: indented ``- /path/name [TYPE]: summary`` lines, no ids."""
    lines = []

    def walk(node_id: str, depth: int):
        node = session.nodes.get(node_id)
        if node is None:
            return
        path = session.parent_path(node.parent_id).rstrip("/") + "/" + node.name
        summary = " ".join(node.description.split())
        if len(summary) > _SUMMARY_LENGTH:
            summary = summary[:_SUMMARY_LENGTH] + "..."
        lines.append(f"{'  ' * depth}- {path} [{node.type.value}]: {summary}")
        for child_id in session.children_ids(node_id):
            walk(child_id, depth + 1)

    for root_id in session.root_node_ids:
        walk(root_id, 0)
    return "\n".join(lines) if lines else "(empty)"


def summarize_report(report: AdmissionReport) -> str:
    """Tool result text sent back to the model."""
    parts = [f"created {len(report.created)}", f"updated {len(report.updated)}"]
    if report.rejected:
        parts.append(f"rejected {report.rejected} (see errors)")
    if report.skipped:
        parts.append(f"skipped {report.skipped} already existing")
    return ", ".join(parts)


class ModificationService:
    """Post-generation edits of a session tree."""

    def __init__(
        self,
        store: SessionStore,
        bus: EventBus,
        admitter: NodeAdmitter,
        router: ModelRouter,
        strategies: StrategyRegistry,
        modification_steps: int | None = None,
        adjust_steps: int | None = None,
        adjust_timeout: float | None = None,
    ):
        self.store = store
        self.bus = bus
        self.admitter = admitter
        self.router = router
        self.strategies = strategies
        self.modification_steps = modification_steps or settings.modification_tool_loop_steps
        self.adjust_steps = adjust_steps or settings.generation_tool_loop_steps
        self.adjust_timeout = adjust_timeout or settings.adjust_timeout_seconds
        self._locks: dict[str, asyncio.Lock] = {}

    def lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    def forget(self, session_id: str):
        self._locks.pop(session_id, None)

    def _chat_model(self, session: GenerationSession, model_config_id: Optional[str], temperature: float):
        route = self.router.resolve(
            session.user_id,
            model_config_id or session.model_config_id,
            bool(session.metadata.get(USE_PUBLIC_POOL)),
        )
        return self.router.chat_model(route, temperature)

    # Single node modification

    def prepare_modification(self, session: GenerationSession, node_id: str) -> SettingNode:
        """Check the node and open the modification channel before any work starts."""
        if session.status not in (SessionStatus.COMPLETED, SessionStatus.SAVED):
            raise InvalidSessionStateError(
                f"Session {session.session_id} cannot be modified in status {session.status.value}"
            )
        node = session.nodes.get(node_id)
        if node is None:
            raise NodeNotFoundError(session.session_id, node_id)
        self.bus.open(session.session_id, StreamKind.MODIFICATION)
        return node

    async def modify_node(
        self,
        session: GenerationSession,
        node_id: str,
        instruction: str,
        scope: ModificationScope = ModificationScope.SELF,
        model_config_id: Optional[str] = None,
    ):
        """
        Run the modification tool loop for one node.

        Every candidate is checked against ``scope`` relative to the node.
        Ends with a MODIFICATION_SUCCESS completion on the modification
        channel; session status is never touched.
        """
        sid = session.session_id
        started = time.monotonic()
        async with self.lock_for(sid):
            node = self.prepare_modification(session, node_id)
            session.metadata[MODIFICATION_SCOPE] = scope.value
            session.metadata[CURRENT_NODE_ID] = node_id
            self.store.save(session)

            context = AdmissionContext(
                require_generating=False,
                scope=scope,
                current_node_id=node_id,
                stream=StreamKind.MODIFICATION,
            )

            def apply(candidates: list[CandidateNode]) -> str:
                return summarize_report(self.admitter.admit_batch(session, candidates, context))

            original_parent = node.parent_id or "null"
            messages = [
                SystemMessage(content=MODIFICATION_SYSTEM_PROMPT.format(
                    scope_rules=_SCOPE_RULES[scope].format(
                        current_node_id=node_id,
                        original_parent_id=original_parent,
                    ),
                    setting_types=", ".join(SETTING_TYPE_NAMES),
                )),
                HumanMessage(content=MODIFICATION_TASK_PROMPT.format(
                    current_node_id=node_id,
                    name=node.name,
                    node_type=node.type.value,
                    path=session.parent_path(node.parent_id),
                    original_parent_id=original_parent,
                    description=node.description,
                    tree=render_tree(session),
                    instruction=instruction,
                )),
            ]

            try:
                llm = self._chat_model(session, model_config_id, 0.7)
                await run_tool_loop(llm, MODIFICATION_TOOLS, messages, apply, self.modification_steps)
            except Exception as e:
                logger.exception("Modification of node %s in session %s failed", node_id, sid)
                self.bus.publish(sid, GenerationError(
                    error_code=MODIFICATION_FAILED,
                    error_message=safe_error_message(e),
                    node_id=node_id,
                    recoverable=False,
                ), StreamKind.MODIFICATION)
                self.bus.close(sid, StreamKind.MODIFICATION)
                return
            finally:
                session.metadata.pop(MODIFICATION_SCOPE, None)
                session.metadata.pop(CURRENT_NODE_ID, None)
                self.store.save(session)

            self.bus.publish(sid, GenerationCompleted(
                total_nodes_generated=len(session.nodes),
                generation_time_ms=int((time.monotonic() - started) * 1000),
                status=OUTCOME_MODIFICATION_SUCCESS,
            ), StreamKind.MODIFICATION)
            self.bus.close(sid, StreamKind.MODIFICATION)
            logger.info("Modified node %s in session %s (scope=%s)", node_id, sid, scope.value)

    # Session adjustment

    def prepare_adjust(self, session: GenerationSession):
        """COMPLETED -> GENERATING with a fresh generation channel."""
        if session.status != SessionStatus.COMPLETED:
            raise InvalidSessionStateError(
                f"Session {session.session_id} can only be adjusted when COMPLETED (is {session.status.value})"
            )
        session.status = SessionStatus.GENERATING
        self.store.save(session)
        self.bus.open(session.session_id, StreamKind.GENERATION)

    async def adjust_session(
        self,
        session: GenerationSession,
        instruction: str,
        model_config_id: Optional[str] = None,
        prompt_template_id: Optional[str] = None,
    ):
        """Extend a completed tree from an instruction, then complete again."""
        sid = session.session_id
        started = time.monotonic()
        strategy = self.strategies.get(prompt_template_id or session.strategy_id)

        def apply(candidates: list[CandidateNode]) -> str:
            return summarize_report(self.admitter.admit_batch(session, candidates))

        messages = [
            SystemMessage(content=GENERATION_TOOL_SYSTEM_PROMPT.format(
                strategy_name=strategy.name,
                strategy_description=strategy.description,
                templates_info=strategy.templates_info(),
                rules_info=strategy.rules_info(),
                setting_types=", ".join(SETTING_TYPE_NAMES),
            )),
            HumanMessage(content=ADJUST_TASK_PROMPT.format(
                tree=render_tree(session),
                temp_id_index=temp_ids.build_index(session),
                instruction=instruction,
            )),
        ]

        try:
            llm = self._chat_model(session, model_config_id, 0.7)
            await asyncio.wait_for(
                run_tool_loop(llm, GENERATION_TOOLS, messages, apply, self.adjust_steps),
                timeout=self.adjust_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Adjustment of session %s timed out after %.0fs", sid, self.adjust_timeout)
            self.bus.publish(sid, GenerationError(
                error_code=ADJUST_TIMEOUT,
                error_message=f"Adjustment timed out after {self.adjust_timeout:.0f}s",
                recoverable=True,
            ))
        except Exception as e:
            logger.exception("Adjustment of session %s failed", sid)
            self.bus.publish(sid, GenerationError(
                error_code=ADJUST_FAILED,
                error_message=safe_error_message(e),
                recoverable=True,
            ))

        if session.status != SessionStatus.GENERATING:
            logger.info("Session %s left GENERATING during adjustment (%s)", sid, session.status.value)
            return
        session.status = SessionStatus.COMPLETED
        self.store.save(session)
        self.bus.publish(sid, GenerationCompleted(
            total_nodes_generated=len(session.nodes),
            generation_time_ms=int((time.monotonic() - started) * 1000),
            status=OUTCOME_SUCCESS,
        ))
        self.bus.close(sid, StreamKind.GENERATION)
        logger.info("Adjusted session %s, %d nodes", sid, len(session.nodes))

    # Direct edits

    def update_node_content(self, session: GenerationSession, node_id: str, description: str) -> SettingNode:
        node = session.nodes.get(node_id)
        if node is None:
            raise NodeNotFoundError(session.session_id, node_id)
        description = (description or "").strip()
        errors = []
        if not description:
            errors.append("Description is required")
        elif len(description) > settings.node_description_max_length:
            errors.append(f"Description exceeds {settings.node_description_max_length} characters")
        if errors:
            raise ValidationFailed(errors, node_id)

        previous = node.model_copy(deep=True)
        updated = node.model_copy(update={"description": description, "generation_status": NodeStatus.MODIFIED})
        session.add_node(updated)
        self.store.save(session)
        self.bus.publish(session.session_id, NodeUpdated(node=updated, previous_version=previous),
                         StreamKind.MODIFICATION)
        return updated

    def delete_node(self, session: GenerationSession, node_id: str, reason: str = "deleted by user") -> list[str]:
        """Remove a node with its subtree."""
        if node_id not in session.nodes:
            raise NodeNotFoundError(session.session_id, node_id)
        removed = session.remove_subtree(node_id)
        self.store.save(session)
        self.bus.publish(session.session_id, NodeDeleted(deleted_node_ids=removed, reason=reason),
                         StreamKind.MODIFICATION)
        logger.info("Deleted %d nodes from session %s", len(removed), session.session_id)
        return removed
