"""Tests for scoped modification, session adjustment and direct edits."""
import pytest

from setting_forge.errors import InvalidSessionStateError, NodeNotFoundError, ValidationFailed
from setting_forge.models import CandidateNode, EventType, ModificationScope, NodeStatus, SessionStatus
from setting_forge.models.events import OUTCOME_MODIFICATION_SUCCESS, OUTCOME_SUCCESS
from setting_forge.models.session import CURRENT_NODE_ID, MODIFICATION_SCOPE
from setting_forge.models.tool_results import (
    CREATE_SETTING_NODES,
    MARK_GENERATION_COMPLETE,
    MARK_MODIFICATION_COMPLETE,
)
from setting_forge.services import temp_ids
from setting_forge.services.admission import SCOPE_VIOLATION
from setting_forge.services.event_bus import StreamKind
from setting_forge.services.modification import ADJUST_FAILED, MODIFICATION_FAILED, render_tree
from conftest import tool_call


def completed_session(service):
    """A COMPLETED session holding Characters > Elena Vance."""
    session = service.store.create("user-1", None, "A floating archipelago", "default")
    session.status = SessionStatus.GENERATING
    service.bus.open(session.session_id)
    service.admitter.admit_batch(session, [
        CandidateNode(name="Characters", type="CHARACTER", description="People of the archipelago",
                      temp_id="R1"),
        CandidateNode(name="Elena Vance", type="CHARACTER", description="A disgraced cartographer",
                      temp_id="R1-1", parent_id="R1"),
    ])
    service.bus.close(session.session_id)
    session.status = SessionStatus.COMPLETED
    service.store.save(session)
    return session


def node_named(session, name):
    return next(n for n in session.nodes.values() if n.name == name)


def modification_events(service, session):
    return list(service.bus.channel(session.session_id, StreamKind.MODIFICATION).history)


class TestRenderTree:
    """Readable outline handed to the model."""

    def test_outline(self, service):
        session = completed_session(service)
        assert render_tree(session).splitlines() == [
            "- /Characters [CHARACTER]: People of the archipelago",
            "  - /Characters/Elena Vance [CHARACTER]: A disgraced cartographer",
        ]

    def test_long_descriptions_are_cut(self, service):
        session = completed_session(service)
        elena = node_named(session, "Elena Vance")
        session.add_node(elena.model_copy(update={"description": "word " * 100}))
        line = render_tree(session).splitlines()[1]
        assert line.endswith("...")
        assert len(line.split(": ", 1)[1]) == 143

    def test_empty(self, service):
        session = service.store.create("user-1", None, "prompt", "default")
        assert render_tree(session) == "(empty)"


class TestModifyNode:
    """Scoped tool-loop edits of one node."""

    async def test_self_scope_update(self, service, writer):
        session = completed_session(service)
        elena = node_named(session, "Elena Vance")
        writer.responses = [
            tool_call(CREATE_SETTING_NODES, {"nodes": [{
                "id": elena.id, "parent_id": elena.parent_id, "name": "Elena Vance",
                "type": "CHARACTER", "description": "A cartographer turned harbour master",
            }]}),
            tool_call(MARK_MODIFICATION_COMPLETE, {}, call_id="call_2"),
        ]

        task = await service.modify_node(session.session_id, elena.id, "Make her the harbour master")
        await task

        updated = session.nodes[elena.id]
        assert updated.description == "A cartographer turned harbour master"
        assert updated.generation_status == NodeStatus.MODIFIED
        assert session.status == SessionStatus.COMPLETED
        assert MODIFICATION_SCOPE not in session.metadata
        assert CURRENT_NODE_ID not in session.metadata

        events = modification_events(service, session)
        assert [e.event_type for e in events] == [EventType.NODE_UPDATED, EventType.GENERATION_COMPLETED]
        assert events[-1].status == OUTCOME_MODIFICATION_SUCCESS
        assert service.bus.channel(session.session_id, StreamKind.MODIFICATION).closed

    async def test_prompt_carries_node_and_tree(self, service, writer):
        session = completed_session(service)
        elena = node_named(session, "Elena Vance")
        writer.responses = [tool_call(MARK_MODIFICATION_COMPLETE, {})]

        await (await service.modify_node(session.session_id, elena.id, "Give her a rival"))

        task_prompt = writer.calls[0][1].content
        assert elena.id in task_prompt
        assert "/Characters/Elena Vance" in task_prompt
        assert "Give her a rival" in task_prompt

    async def test_self_scope_rejects_new_child(self, service, writer):
        session = completed_session(service)
        elena = node_named(session, "Elena Vance")
        writer.responses = [
            tool_call(CREATE_SETTING_NODES, {"nodes": [{
                "name": "Elena's Compass", "type": "ITEM", "parent_id": elena.id,
                "description": "A compass that points to lost islands",
            }]}),
            tool_call(MARK_MODIFICATION_COMPLETE, {}, call_id="call_2"),
        ]

        await (await service.modify_node(session.session_id, elena.id, "Give her a compass"))

        assert len(session.nodes) == 2
        errors = [e for e in modification_events(service, session) if e.event_type == EventType.GENERATION_ERROR]
        assert errors[0].error_code == SCOPE_VIOLATION
        tool_result = writer.calls[1][-1]
        assert "rejected 1" in tool_result.content

    async def test_children_only_scope_creates_child(self, service, writer):
        session = completed_session(service)
        elena = node_named(session, "Elena Vance")
        writer.responses = [
            tool_call(CREATE_SETTING_NODES, {"nodes": [{
                "name": "Elena's Compass", "type": "ITEM", "parent_id": elena.id,
                "description": "A compass that points to lost islands",
            }]}),
            tool_call(MARK_MODIFICATION_COMPLETE, {}, call_id="call_2"),
        ]

        await (await service.modify_node(session.session_id, elena.id, "Give her a compass",
                                            ModificationScope.CHILDREN_ONLY))

        compass = node_named(session, "Elena's Compass")
        assert compass.parent_id == elena.id

    async def test_provider_failure_reports_error(self, service, writer):
        session = completed_session(service)
        elena = node_named(session, "Elena Vance")

        def broken(messages):
            raise RuntimeError("provider down")

        writer.handler = broken
        await (await service.modify_node(session.session_id, elena.id, "Anything"))

        events = modification_events(service, session)
        assert events[-1].error_code == MODIFICATION_FAILED
        assert not events[-1].recoverable
        assert session.status == SessionStatus.COMPLETED

    async def test_requires_finished_session(self, service):
        running = service.store.create("user-1", None, "prompt", "default")
        running.status = SessionStatus.GENERATING
        with pytest.raises(InvalidSessionStateError):
            await service.modify_node(running.session_id, "any", "Change it")

    async def test_unknown_node(self, service):
        session = completed_session(service)
        with pytest.raises(NodeNotFoundError):
            await service.modify_node(session.session_id, "ghost", "Change it")

    async def test_empty_instruction(self, service):
        session = completed_session(service)
        elena = node_named(session, "Elena Vance")
        with pytest.raises(ValidationFailed):
            await service.modify_node(session.session_id, elena.id, "  ")


class TestAdjust:
    """Extending a completed tree."""

    async def test_adjust_adds_nodes_and_completes_again(self, service, writer):
        session = completed_session(service)
        writer.responses = [
            tool_call(CREATE_SETTING_NODES, {"nodes": [{
                "name": "Marcus Reed", "type": "CHARACTER", "parent_id": "R1", "temp_id": "R1-2",
                "description": "A smuggler who owes Elena a debt",
            }]}),
            tool_call(MARK_GENERATION_COMPLETE, {}, call_id="call_2"),
        ]

        returned = await service.adjust(session.session_id, "Add a rival for Elena")
        assert returned.status == SessionStatus.GENERATING
        await service.wait_idle()

        marcus = node_named(session, "Marcus Reed")
        assert marcus.parent_id == temp_ids.resolve(session, "R1")
        assert session.status == SessionStatus.COMPLETED
        events = list(service.bus.channel(session.session_id).history)
        assert events[-1].event_type == EventType.GENERATION_COMPLETED
        assert events[-1].status == OUTCOME_SUCCESS
        assert "R1 | Characters | CHARACTER" in writer.calls[0][1].content

    async def test_adjust_failure_still_completes(self, service, writer):
        session = completed_session(service)

        def broken(messages):
            raise RuntimeError("provider down")

        writer.handler = broken
        await service.adjust(session.session_id, "Add a rival")
        await service.wait_idle()

        assert session.status == SessionStatus.COMPLETED
        codes = [e.error_code for e in service.bus.channel(session.session_id).history
                 if e.event_type == EventType.GENERATION_ERROR]
        assert codes == [ADJUST_FAILED]

    async def test_adjust_requires_completed(self, service, writer):
        session = completed_session(service)
        session.status = SessionStatus.SAVED
        with pytest.raises(InvalidSessionStateError):
            await service.adjust(session.session_id, "Add a rival")


class TestDirectEdits:
    """Content updates and deletes without a model."""

    def test_update_content(self, service):
        session = completed_session(service)
        elena = node_named(session, "Elena Vance")
        service.bus.open(session.session_id, StreamKind.MODIFICATION)

        updated = service.update_node_content(session.session_id, elena.id, "  Retired to the lighthouse  ")

        assert updated.description == "Retired to the lighthouse"
        assert updated.generation_status == NodeStatus.MODIFIED
        event = modification_events(service, session)[-1]
        assert event.event_type == EventType.NODE_UPDATED
        assert event.previous_version.description == "A disgraced cartographer"

    def test_update_content_validation(self, service):
        session = completed_session(service)
        elena = node_named(session, "Elena Vance")
        with pytest.raises(ValidationFailed):
            service.update_node_content(session.session_id, elena.id, "")
        with pytest.raises(ValidationFailed):
            service.update_node_content(session.session_id, elena.id, "x" * 5001)
        with pytest.raises(NodeNotFoundError):
            service.update_node_content(session.session_id, "ghost", "text")

    def test_delete_subtree(self, service):
        session = completed_session(service)
        root = node_named(session, "Characters")
        elena = node_named(session, "Elena Vance")
        service.bus.open(session.session_id, StreamKind.MODIFICATION)

        removed = service.delete_node(session.session_id, root.id)

        assert set(removed) == {root.id, elena.id}
        assert not session.nodes
        assert session.root_node_ids == []
        assert temp_ids.temp_id_map(session) == {"R1": root.id, "R1-1": elena.id}
        event = modification_events(service, session)[-1]
        assert event.event_type == EventType.NODE_DELETED

    def test_delete_unknown_node(self, service):
        session = completed_session(service)
        with pytest.raises(NodeNotFoundError):
            service.delete_node(session.session_id, "ghost")
