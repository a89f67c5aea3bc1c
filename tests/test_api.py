"""Tests for the HTTP and WebSocket API."""

import time

import pytest

from builders import build_workflow, connect, node, trigger

API = "/api/v1"


def _wait_for_status(client, execution_id, timeout=5.0):
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f"{API}/executions/{execution_id}").json()
        if body["status"] not in ("pending", "running") or time.monotonic() > deadline:
            return body
        time.sleep(0.02)


@pytest.fixture
def workflow_document():
    return build_workflow(
        [trigger(), node("greet", action="set", variables={"message": "hello {{name}}"})],
        [connect("start", "greet")],
        name="Greeter",
    ).to_json_dict()


@pytest.fixture
def created(client, workflow_document):
    response = client.post(f"{API}/workflows", json=workflow_document)
    assert response.status_code == 201
    return response.json()


class TestHealth:

    def test_root_and_health(self, client):
        assert client.get("/").status_code == 200
        health = client.get("/health").json()
        assert health["status"] == "healthy"
        assert health["queue"]["running_executions"] == 0


class TestWorkflowEndpoints:
    """Test cases for workflow management endpoints."""

    def test_create_returns_validation(self, created):
        assert created["workflow"]["name"] == "Greeter"
        assert created["validation"]["isValid"] is True

    def test_get_list_update_delete(self, client, created):
        workflow_id = created["workflow"]["id"]
        assert client.get(f"{API}/workflows/{workflow_id}").json()["id"] == workflow_id
        assert [w["id"] for w in client.get(f"{API}/workflows", params={"search": "greet"}).json()] == [workflow_id]

        updated = client.put(f"{API}/workflows/{workflow_id}", json={"description": "Says hello"})
        assert updated.status_code == 200
        assert updated.json()["description"] == "Says hello"

        assert client.delete(f"{API}/workflows/{workflow_id}").json() == {"deleted": True, "workflowId": workflow_id}
        assert client.delete(f"{API}/workflows/{workflow_id}").status_code == 404

    def test_unknown_workflow_is_404(self, client):
        response = client.get(f"{API}/workflows/missing")
        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "WorkflowNotFoundError"

    def test_malformed_workflow_is_400(self, client):
        response = client.post(f"{API}/workflows", json={"name": "Bad", "nodes": [{"id": "x", "type": "nope"}]})
        assert response.status_code == 400

    def test_graph_edits(self, client, created):
        workflow_id = created["workflow"]["id"]
        added = client.post(f"{API}/workflows/{workflow_id}/nodes", json=node("log", action="log"))
        assert added.status_code == 201

        connection = client.post(f"{API}/workflows/{workflow_id}/connections", json=connect("greet", "log"))
        assert connection.status_code == 201

        cycle = client.post(f"{API}/workflows/{workflow_id}/connections", json=connect("log", "start"))
        assert cycle.status_code == 400
        assert cycle.json()["detail"]["error"] == "GraphValidationError"

        renamed = client.put(f"{API}/workflows/{workflow_id}/nodes/log", json={"name": "Logger"})
        assert renamed.json()["name"] == "Logger"

        assert client.delete(f"{API}/workflows/{workflow_id}/nodes/log").status_code == 200
        remaining = client.get(f"{API}/workflows/{workflow_id}").json()
        assert [c["id"] for c in remaining["connections"]] == ["start_to_greet"]

    def test_validate_endpoint(self, client, created):
        result = client.post(f"{API}/workflows/{created['workflow']['id']}/validate").json()
        assert result["isValid"] is True
        assert result["errors"] == []

    def test_export_import_and_duplicate(self, client, created):
        workflow_id = created["workflow"]["id"]
        exported = client.get(f"{API}/workflows/{workflow_id}/export")
        assert exported.status_code == 200
        assert exported.headers["content-type"].startswith("application/json")

        imported = client.post(f"{API}/workflows/import", json=exported.json())
        assert imported.status_code == 201
        assert imported.json()["id"] != workflow_id
        assert len(imported.json()["nodes"]) == 2

        duplicate = client.post(f"{API}/workflows/{workflow_id}/duplicate", json={"name": "Copy"})
        assert duplicate.status_code == 201
        assert duplicate.json()["name"] == "Copy"


class TestExecutionEndpoints:
    """Test cases for execution endpoints."""

    def test_execute_and_poll(self, client, created):
        workflow_id = created["workflow"]["id"]
        response = client.post(f"{API}/workflows/{workflow_id}/execute", json={"input": {"name": "ada"}})
        assert response.status_code == 202
        execution_id = response.json()["executionId"]

        body = _wait_for_status(client, execution_id)
        assert body["status"] == "completed"
        assert body["variables"]["message"] == "hello ada"

        history = client.get(f"{API}/executions", params={"workflowId": workflow_id}).json()
        assert [h["executionId"] for h in history] == [execution_id]
        assert history[0]["trigger"] == {"type": "api"}

        statistics = client.get(f"{API}/statistics").json()
        assert statistics["total_executions"] == 1
        assert "queue" in statistics

        assert client.delete(f"{API}/executions").json() == {"removed": 1}

    def test_execute_with_validation_option(self, client):
        invalid = build_workflow([node("a", action="log")], name="No trigger").to_json_dict()
        workflow_id = client.post(f"{API}/workflows", json=invalid).json()["workflow"]["id"]
        response = client.post(f"{API}/workflows/{workflow_id}/execute", json={"options": {"validate": True}})
        assert response.status_code == 400

    def test_execute_unknown_workflow(self, client):
        assert client.post(f"{API}/workflows/missing/execute").status_code == 404

    def test_stop_execution(self, client):
        slow = build_workflow([trigger(), node("wait", "delay", duration=5000)], [connect("start", "wait")])
        workflow_id = client.post(f"{API}/workflows", json=slow.to_json_dict()).json()["workflow"]["id"]
        execution_id = client.post(f"{API}/workflows/{workflow_id}/execute").json()["executionId"]

        stopped = client.post(f"{API}/executions/{execution_id}/stop").json()
        assert stopped["stopped"] is True
        assert stopped["status"] == "cancelled"
        assert client.post(f"{API}/executions/{execution_id}/stop").json()["stopped"] is False

    def test_unknown_execution_is_404(self, client):
        assert client.get(f"{API}/executions/missing").status_code == 404
        assert client.post(f"{API}/executions/missing/stop").status_code == 404

    def test_list_actions(self, client):
        names = [action["name"] for action in client.get(f"{API}/actions").json()]
        assert "echo" in names
        assert "increment" in names


class TestTemplateEndpoints:

    def test_create_and_apply_template(self, client, created):
        workflow_id = created["workflow"]["id"]
        template = client.post(f"{API}/templates", json={"workflowId": workflow_id, "category": "demo"})
        assert template.status_code == 201
        template_id = template.json()["id"]

        assert [t["id"] for t in client.get(f"{API}/templates", params={"category": "demo"}).json()] == [template_id]
        assert client.get(f"{API}/templates/{template_id}").json()["category"] == "demo"

        applied = client.post(f"{API}/templates/{template_id}/apply", json={"name": "From template"})
        assert applied.status_code == 201
        assert applied.json()["name"] == "From template"
        assert applied.json()["metadata"]["templateId"] == template_id

        assert client.get(f"{API}/templates/missing").status_code == 404


class TestWebSocket:
    """Test cases for the execution event stream."""

    def test_ping(self, client):
        with client.websocket_connect(f"{API}/ws/executions") as websocket:
            websocket.send_json({"action": "ping"})
            assert websocket.receive_json() == {"type": "pong"}
            websocket.send_text("not json")
            assert websocket.receive_json()["type"] == "error"

    def test_streams_execution_events(self, client, created):
        workflow_id = created["workflow"]["id"]
        with client.websocket_connect(f"{API}/ws/executions") as websocket:
            websocket.send_json({"action": "ping"})
            assert websocket.receive_json() == {"type": "pong"}

            execution_id = client.post(f"{API}/workflows/{workflow_id}/execute").json()["executionId"]
            received = []
            while not received or received[-1]["type"] not in ("complete", "error"):
                received.append(websocket.receive_json())

        assert {event["executionId"] for event in received} == {execution_id}
        assert received[0]["type"] == "start"
        assert received[-1]["type"] == "complete"
