"""Node admission: resolve parents, validate, admit, and announce candidate nodes."""
import logging
from dataclasses import dataclass, field
from typing import Optional
from uuid import uuid4

from setting_forge.models import (
    CandidateNode,
    GenerationError,
    GenerationSession,
    ModificationScope,
    NodeCreated,
    NodeStatus,
    NodeUpdated,
    SessionStatus,
    SettingNode,
    sanitize_node_name,
)
from . import temp_ids
from .event_bus import EventBus, StreamKind
from .session_store import SessionStore
from .strategies import StrategyRegistry
from .validation import ValidationEngine


logger = logging.getLogger(__name__)

VALIDATION_ERROR = "VALIDATION_ERROR"
SCOPE_VIOLATION = "SCOPE_VIOLATION"


@dataclass
class AdmissionContext:
    """Where a batch comes from and what it may touch."""
    require_generating: bool = True
    scope: Optional[ModificationScope] = None
    current_node_id: Optional[str] = None
    stream: StreamKind = StreamKind.GENERATION


@dataclass
class AdmissionReport:
    """What happened to one batch of candidates."""
    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    rejected: int = 0
    skipped: int = 0
    discarded: bool = False

    @property
    def admitted(self) -> int:
        return len(self.created) + len(self.updated)


class NodeAdmitter:
    """Turns candidate nodes into session nodes through the validation engine."""

    def __init__(
        self,
        store: SessionStore,
        bus: EventBus,
        validator: ValidationEngine,
        strategies: StrategyRegistry,
    ):
        self.store = store
        self.bus = bus
        self.validator = validator
        self.strategies = strategies

    def admit_batch(
        self,
        session: GenerationSession,
        candidates: list[CandidateNode],
        context: AdmissionContext | None = None,
    ) -> AdmissionReport:
        """
        Admit one batch in order.

        A child whose parent token is defined later in the same batch waits
        until that parent has been admitted. Tokens are bound only after
        their node is admitted, and never rebound.
        """
        context = context or AdmissionContext()
        report = AdmissionReport()
        if context.require_generating and session.status != SessionStatus.GENERATING:
            logger.info("Discarding %d candidates for session %s (status %s)",
                        len(candidates), session.session_id, session.status.value)
            report.discarded = True
            return report

        batch_map: dict[str, str] = {}
        pending = list(candidates)
        while pending:
            waiting_tokens = {c.temp_id for c in pending if c.temp_id}
            deferred = []
            for candidate in pending:
                ref = candidate.parent_id
                if (
                    ref
                    and ref != candidate.temp_id
                    and ref in waiting_tokens
                    and self._lookup(session, ref, batch_map) is None
                ):
                    deferred.append(candidate)
                    continue
                self._admit_one(session, candidate, batch_map, context, report)
            if len(deferred) == len(pending):
                # Parents that can never be admitted in this batch
                for candidate in deferred:
                    self._admit_one(session, candidate, batch_map, context, report)
                break
            pending = deferred

        return report

    @staticmethod
    def _lookup(session: GenerationSession, ref: str, batch_map: dict[str, str]) -> Optional[str]:
        if ref in batch_map:
            return batch_map[ref]
        bound = temp_ids.resolve(session, ref)
        if bound is not None:
            return bound
        if ref in session.nodes:
            return ref
        return None

    def _reject(self, session: GenerationSession, code: str, message: str,
                node_id: Optional[str], context: AdmissionContext, report: AdmissionReport):
        logger.warning("Rejected node in session %s: %s", session.session_id, message)
        report.rejected += 1
        self.bus.publish(
            session.session_id,
            GenerationError(error_code=code, error_message=message, node_id=node_id, recoverable=True),
            context.stream,
        )

    def _admit_one(
        self,
        session: GenerationSession,
        candidate: CandidateNode,
        batch_map: dict[str, str],
        context: AdmissionContext,
        report: AdmissionReport,
    ):
        parent_id = None
        if candidate.parent_id:
            parent_id = self._lookup(session, candidate.parent_id, batch_map) or candidate.parent_id

        # Re-delivery of a token that already names a node
        updating_current = context.current_node_id is not None and candidate.id == context.current_node_id
        if candidate.temp_id and not updating_current:
            bound = temp_ids.resolve(session, candidate.temp_id)
            if bound is not None and bound in session.nodes:
                batch_map[candidate.temp_id] = bound
                report.skipped += 1
                logger.debug("Temp id %s re-delivered, resolves to %s", candidate.temp_id, bound)
                return
            if bound is not None:
                # Bindings outlive deletion
                report.skipped += 1
                logger.info("Temp id %s belongs to deleted node %s, skipping", candidate.temp_id, bound)
                return

        node_id = candidate.id if candidate.id and candidate.id in session.nodes else str(uuid4())
        name = sanitize_node_name(candidate.name) or ""

        if context.scope is not None and context.current_node_id is not None:
            violation = self.validator.check_scope(
                node_id=node_id,
                parent_id=parent_id,
                scope=context.scope,
                current_node_id=context.current_node_id,
            )
            if violation:
                self._reject(session, SCOPE_VIOLATION, violation, node_id, context, report)
                return

        strategy = self.strategies.get(session.strategy_id)
        errors = []
        strategy_error = strategy.validate_node(session, parent_id)
        if strategy_error:
            errors.append(strategy_error)
        result = self.validator.validate_node(
            session,
            node_id=node_id,
            parent_id=parent_id,
            name=name,
            type_value=candidate.type,
            description=candidate.description,
            updating_node_id=context.current_node_id,
        )
        errors.extend(result.errors)
        if errors:
            self._reject(session, VALIDATION_ERROR, ", ".join(errors), node_id, context, report)
            return

        existing = session.nodes.get(node_id)
        if existing is not None:
            previous = existing.model_copy(deep=True)
            node = existing.model_copy(update={
                "name": name.strip(),
                "type": result.node_type,
                "description": candidate.description.strip(),
                "attributes": {**existing.attributes, **candidate.attributes},
                "generation_status": NodeStatus.MODIFIED,
            })
            session.add_node(node)
            report.updated.append(node.id)
            self.bus.publish(session.session_id, NodeUpdated(node=node, previous_version=previous), context.stream)
            logger.info("Updated node %s (%s) in session %s", node.id, node.name, session.session_id)
        else:
            node = SettingNode(
                id=node_id,
                parent_id=parent_id,
                name=name.strip(),
                type=result.node_type,
                description=candidate.description.strip(),
                attributes=candidate.attributes,
            )
            session.add_node(node)
            report.created.append(node.id)
            self.bus.publish(
                session.session_id,
                NodeCreated(node=node, parent_path=session.parent_path(parent_id)),
                context.stream,
            )
            logger.info("Admitted node %s (%s) in session %s", node.id, node.name, session.session_id)

        if candidate.temp_id:
            batch_map[candidate.temp_id] = temp_ids.bind(session, candidate.temp_id, node.id)
        self.store.save(session)
