"""Tests for GraphManager and WorkflowValidator."""

import json

import pytest

from workflow_core.core.exceptions import GraphValidationError, WorkflowNotFoundError
from workflow_core.models.core import WorkflowFilters, WorkflowStatus

from builders import build_workflow, connect, node, trigger


@pytest.fixture
def chain(graph_manager):
    """Stored workflow start -> a -> b -> c."""
    workflow = build_workflow(
        [trigger(), node("a", action="log"), node("b", action="log"), node("c", action="log")],
        [connect("start", "a"), connect("a", "b"), connect("b", "c")],
        name="Chain",
    )
    return graph_manager.create_workflow(workflow)


def _messages(issues):
    return [issue.message for issue in issues]


class TestWorkflowCrud:
    """Test cases for workflow storage operations."""

    def test_create_and_get(self, graph_manager, chain):
        loaded = graph_manager.get_workflow(chain.id)
        assert loaded.name == "Chain"
        assert [n.id for n in loaded.nodes] == ["start", "a", "b", "c"]

    def test_create_from_dict(self, graph_manager):
        created = graph_manager.create_workflow({"name": "From dict", "nodes": [trigger()]})
        assert graph_manager.get_workflow(created.id).nodes[0].type.value == "trigger"

    def test_malformed_document_rejected(self, graph_manager):
        with pytest.raises(GraphValidationError):
            graph_manager.create_workflow({"name": "Bad", "nodes": [{"id": "x", "type": "unknown"}]})

    def test_duplicate_id_rejected(self, graph_manager, chain):
        with pytest.raises(GraphValidationError):
            graph_manager.create_workflow(chain)

    def test_unknown_workflow(self, graph_manager):
        with pytest.raises(WorkflowNotFoundError):
            graph_manager.get_workflow("missing")
        assert graph_manager.delete_workflow("missing") is False

    def test_update_preserves_id_and_creation_time(self, graph_manager, chain):
        updated = graph_manager.update_workflow(chain.id, {"name": "Renamed", "status": "active"})
        assert updated.id == chain.id
        assert updated.name == "Renamed"
        assert updated.status == WorkflowStatus.ACTIVE
        assert updated.created_at == graph_manager.get_workflow(chain.id).created_at

    def test_invalid_update_rejected(self, graph_manager, chain):
        with pytest.raises(GraphValidationError):
            graph_manager.update_workflow(chain.id, {"name": ""})

    def test_list_filters(self, graph_manager):
        graph_manager.create_workflow(build_workflow([trigger()], name="Billing sync"))
        tagged = build_workflow([trigger()], name="Reports")
        tagged.tags = ["nightly"]
        tagged.status = WorkflowStatus.ACTIVE
        graph_manager.create_workflow(tagged)

        assert len(graph_manager.list_workflows()) == 2
        assert [w.name for w in graph_manager.list_workflows(WorkflowFilters(tags=["nightly"]))] == ["Reports"]
        assert [w.name for w in graph_manager.list_workflows(WorkflowFilters(search="billing"))] == ["Billing sync"]
        assert [w.name for w in graph_manager.list_workflows(WorkflowFilters(status=["active"]))] == ["Reports"]
        assert len(graph_manager.list_workflows(WorkflowFilters(limit=1))) == 1

    def test_duplicate_workflow(self, graph_manager, chain):
        copy = graph_manager.duplicate_workflow(chain.id)
        assert copy.id != chain.id
        assert copy.name == "Chain (Copy)"
        assert copy.status == WorkflowStatus.DRAFT
        assert not {n.id for n in copy.nodes} & {n.id for n in chain.nodes}


class TestGraphEdits:
    """Test cases for node and connection edits."""

    def test_add_node_and_reject_duplicate(self, graph_manager, chain):
        graph_manager.add_node(chain.id, node("d", action="log"))
        assert graph_manager.get_workflow(chain.id).get_node("d") is not None
        with pytest.raises(GraphValidationError):
            graph_manager.add_node(chain.id, node("d"))

    def test_update_node(self, graph_manager, chain):
        updated = graph_manager.update_node(chain.id, "a", {"name": "First", "config": {"action": "set"}})
        assert updated.id == "a"
        assert graph_manager.get_workflow(chain.id).get_node("a").config == {"action": "set"}
        with pytest.raises(WorkflowNotFoundError):
            graph_manager.update_node(chain.id, "missing", {"name": "x"})

    def test_delete_node_cascades_connections(self, graph_manager, chain):
        assert graph_manager.delete_node(chain.id, "b") is True
        workflow = graph_manager.get_workflow(chain.id)
        assert workflow.get_node("b") is None
        assert [c.id for c in workflow.connections] == ["start_to_a"]
        assert graph_manager.delete_node(chain.id, "b") is False

    def test_cycle_rejected(self, graph_manager, chain):
        """Closing a -> b -> c back onto a is refused; a shortcut a -> c is fine."""
        back_edge = connect("c", "a")
        assert graph_manager.validate_connection(chain.id, back_edge) is False
        with pytest.raises(GraphValidationError) as exc_info:
            graph_manager.add_connection(chain.id, back_edge)
        assert "cycle" in exc_info.value.message

        graph_manager.add_connection(chain.id, connect("a", "c"))
        assert len(graph_manager.get_workflow(chain.id).connections) == 4

    def test_missing_endpoint_rejected(self, graph_manager, chain):
        with pytest.raises(GraphValidationError):
            graph_manager.add_connection(chain.id, connect("a", "ghost"))

    def test_update_connection_into_cycle_rejected(self, graph_manager, chain):
        with pytest.raises(GraphValidationError):
            graph_manager.update_connection(chain.id, "b_to_c", {"targetNodeId": "a"})
        updated = graph_manager.update_connection(chain.id, "b_to_c", {"condition": "ready"})
        assert updated.condition == "ready"

    def test_delete_connection(self, graph_manager, chain):
        assert graph_manager.delete_connection(chain.id, "b_to_c") is True
        assert graph_manager.delete_connection(chain.id, "b_to_c") is False

    def test_port_checks(self, graph_manager):
        """Declared ports must exist and have compatible types; undeclared sides accept anything."""
        workflow = graph_manager.create_workflow(build_workflow([
            trigger(),
            dict(node("num"), outputs=[{"id": "value", "type": "number"}]),
            dict(node("text"), inputs=[{"id": "in", "type": "string"}]),
            node("free"),
        ]))

        mismatch = {"sourceNodeId": "num", "sourceOutputId": "value", "targetNodeId": "text", "targetInputId": "in"}
        with pytest.raises(GraphValidationError) as exc_info:
            graph_manager.add_connection(workflow.id, mismatch)
        assert "type mismatch" in exc_info.value.message

        missing_port = {"sourceNodeId": "num", "sourceOutputId": "nope", "targetNodeId": "free"}
        assert graph_manager.validate_connection(workflow.id, missing_port) is False

        graph_manager.add_connection(workflow.id, {"sourceNodeId": "num", "sourceOutputId": "value",
                                                   "targetNodeId": "free", "targetInputId": "anything"})


class TestValidation:
    """Test cases for whole-workflow validation."""

    def test_trigger_count(self, graph_manager):
        """No trigger is an error; several triggers only warn."""
        none = graph_manager.validate_workflow(build_workflow([node("a", action="log")]))
        assert not none.is_valid
        assert any("trigger" in m for m in none.error_messages)

        several = graph_manager.validate_workflow(build_workflow(
            [trigger("t1"), trigger("t2"), node("a", action="log")],
            [connect("t1", "a"), connect("t2", "a")],
        ))
        assert several.is_valid
        assert any("Multiple trigger" in m for m in _messages(several.warnings))

    def test_cycle_in_stored_document(self, graph_manager):
        workflow = build_workflow(
            [trigger(), node("a"), node("b")],
            [connect("start", "a"), connect("a", "b"), connect("b", "a")],
        )
        result = graph_manager.validate_workflow(workflow)
        assert not result.is_valid
        assert any("cycle" in m for m in result.error_messages)

    def test_node_configuration_errors(self, graph_manager):
        workflow = build_workflow(
            [
                trigger(),
                node("call", "api"),
                node("wait", "delay", duration=0),
                node("check", "condition"),
                node("repeat", "loop", type="for-each"),
            ],
            [connect("start", "call"), connect("call", "wait"), connect("wait", "check"),
             connect("check", "repeat")],
        )
        messages = graph_manager.validate_workflow(workflow).error_messages
        assert "API node requires a URL" in messages
        assert "Delay node requires a positive duration" in messages
        assert "Condition node requires a condition" in messages
        assert any(m.startswith("Invalid loop configuration") for m in messages)

    def test_guard_string_conditions_accepted(self, graph_manager):
        """Condition and loop nodes accept the same guard-string syntax."""
        workflow = build_workflow(
            [trigger(), node("check", "condition", condition="count < 3"),
             node("repeat", "loop", type="while", condition="count < 3")],
            [connect("start", "check"), connect("check", "repeat", isDefault=True)],
        )
        assert graph_manager.validate_workflow(workflow).error_messages == []

    def test_required_inputs(self, graph_manager):
        """A required input is satisfied by a config value or by a connection into its port."""
        workflow = build_workflow(
            [trigger(), dict(node("a", action="log"), inputs=[{"id": "payload", "name": "Payload", "required": True}])],
        )
        result = graph_manager.validate_workflow(workflow)
        assert result.error_messages == ["Required input 'Payload' is not configured"]

        workflow.nodes[1].config["payload"] = {"k": 1}
        assert graph_manager.validate_workflow(workflow).is_valid

        wired = build_workflow(
            [trigger(), dict(node("a", action="log"), inputs=[{"id": "payload", "name": "Payload", "required": True}])],
            [dict(connect("start", "a"), targetInputId="payload")],
        )
        assert graph_manager.validate_workflow(wired).is_valid

    def test_warnings_and_suggestions(self, graph_manager):
        workflow = build_workflow(
            [
                trigger(),
                node("check", "condition", condition={"left": "{{ok}}"}),
                node("yes", action="log"),
                node("orphan", action="log"),
                node("island_a", action="log"),
                node("island_b", action="log"),
            ],
            [connect("start", "check"), connect("check", "yes", "ok"), connect("island_a", "island_b")],
        )
        result = graph_manager.validate_workflow(workflow)
        assert result.is_valid
        warnings = _messages(result.warnings)
        assert "Node 'orphan' is disconnected" in warnings
        assert "Node 'island_b' is not reachable from any trigger" in warnings
        assert any("no default branch" in m for m in _messages(result.suggestions))

    def test_script_conditions_are_flagged(self, graph_manager):
        workflow = build_workflow(
            [trigger(), node("check", "condition", condition={"type": "script", "script": "().__class__"})],
            [connect("start", "check")],
        )
        result = graph_manager.validate_workflow(workflow)
        assert any(issue.type == "security" for issue in result.warnings)
        assert any(issue.type == "security" for issue in result.errors)


class TestImportExportAndTemplates:
    """Test cases for portability features."""

    def test_export_import_regenerates_ids(self, graph_manager, chain):
        document = graph_manager.export_workflow(chain.id)
        assert json.loads(document)["workflow"]["id"] == chain.id

        imported = graph_manager.import_workflow(document)
        assert imported.id != chain.id
        assert len(imported.nodes) == len(chain.nodes)
        assert len(imported.connections) == len(chain.connections)
        assert [n.type for n in imported.nodes] == [n.type for n in chain.nodes]
        assert not {n.id for n in imported.nodes} & {n.id for n in chain.nodes}

        node_ids = {n.id for n in imported.nodes}
        for connection in imported.connections:
            assert connection.source_node_id in node_ids
            assert connection.target_node_id in node_ids

    def test_import_rejects_garbage(self, graph_manager):
        with pytest.raises(GraphValidationError):
            graph_manager.import_workflow("not json")
        with pytest.raises(GraphValidationError):
            graph_manager.import_workflow({"workflow": "nope"})

    def test_templates(self, graph_manager):
        source = build_workflow([trigger()], name="Greeter", variables={"greeting": "hi"})
        source = graph_manager.create_workflow(source)

        template = graph_manager.create_template(source.id, category="demo")
        assert [t.id for t in graph_manager.list_templates("demo")] == [template.id]
        assert graph_manager.list_templates("other") == []

        applied = graph_manager.apply_template(template.id, "Hello", {"greeting": "hello"})
        assert applied.name == "Hello"
        assert applied.id != source.id
        assert applied.variables[0].default_value == "hello"
        assert applied.metadata["templateId"] == template.id
        assert graph_manager.get_template(template.id).usage_count == 1

        with pytest.raises(WorkflowNotFoundError):
            graph_manager.get_template("missing")
