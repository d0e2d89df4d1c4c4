import json
import random
import time

import pytest
from fastapi.testclient import TestClient

from agentflow.domain.results import ServiceResult
from agentflow.interfaces.api.schemas import http_status_for
from agentflow.main import create_app
from agentflow.persistence.inmemory_store import InMemoryWorkflowStore
from agentflow.service.engine_service import WorkflowEngineService
from agentflow.service.mock.mock_engine import MockWorkflowEngineService
from agentflow.service.mock.mock_simulator import MockExecutionConfig

from conftest import step, template_payload

TERMINAL = {"completed", "failed", "cancelled", "timeout"}


@pytest.fixture
def client():
    app = create_app(service=WorkflowEngineService(InMemoryWorkflowStore(), retry_delay_ms=0))
    with TestClient(app) as c:
        yield c


@pytest.fixture
def mock_client():
    service = MockWorkflowEngineService(
        config=MockExecutionConfig(simulate_delay=False, failure_rate=0.0),
        rng=random.Random(1),
    )
    with TestClient(create_app(service=service)) as c:
        yield c


def _create(client, steps=None, **extra):
    r = client.post("/workflow_templates/", json=template_payload(steps or [step("a", 1)], **extra))
    assert r.status_code == 201, r.text
    return r.json()["data"]


def _wait_for_terminal(client, run_id, attempts=200):
    for _ in range(attempts):
        body = client.get(f"/workflow_executions/{run_id}").json()
        if body["data"]["status"] in TERMINAL:
            return body["data"]
        time.sleep(0.01)
    raise AssertionError(f"run {run_id} did not finish")


@pytest.mark.parametrize(
    "code,expected",
    [
        ("TEMPLATE_NOT_FOUND", 404),
        ("WORKFLOW_RUN_NOT_FOUND", 404),
        ("VALIDATION_ERROR", 400),
        ("INPUT_VALIDATION_FAILED", 400),
        ("TEMPLATE_IN_USE", 409),
        ("WORKFLOW_STATE_ERROR", 409),
        ("RESOURCE_LIMIT_ERROR", 429),
        ("STEP_EXECUTION_ERROR", 500),
    ],
)
def test_error_codes_map_to_http_status(code, expected):
    assert http_status_for(ServiceResult.fail(code, "x")) == expected
    assert http_status_for(ServiceResult.ok(), success_status=202) == 202


def test_template_routes(client):
    created = _create(client, name="Billing", tags=["finance"])
    template_id = created["id"]
    assert created["steps"][0]["stepId"] == "a"

    assert client.get(f"/workflow_templates/{template_id}").json()["data"]["name"] == "Billing"
    assert [t["id"] for t in client.get("/workflow_templates/").json()["data"]] == [template_id]
    assert client.get("/workflow_templates/", params={"active": "false"}).json()["data"] == []

    updated = client.put(f"/workflow_templates/{template_id}", json={"description": "monthly"})
    assert updated.json()["data"]["description"] == "monthly"

    found = client.get("/workflow_templates/search", params={"q": "finance"}).json()["data"]
    assert [t["id"] for t in found] == [template_id]

    clone = client.post(f"/workflow_templates/{template_id}/clone", json={"newName": "Billing v2"})
    assert clone.status_code == 201
    assert clone.json()["data"]["name"] == "Billing v2"
    assert client.post(f"/workflow_templates/{template_id}/clone").json()["data"]["name"] == "Billing (Copy)"

    exported = client.get(f"/workflow_templates/{template_id}/export").json()["data"]
    assert json.loads(exported)["template"]["id"] == template_id
    imported = client.post("/workflow_templates/import", json={"data": exported})
    assert imported.status_code == 201
    assert imported.json()["data"]["name"] == "Billing (Imported)"

    deleted = client.delete(f"/workflow_templates/{template_id}")
    assert deleted.json() == {"success": True, "data": {"id": template_id, "deleted": True}}
    missing = client.get(f"/workflow_templates/{template_id}")
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "TEMPLATE_NOT_FOUND"


def test_invalid_templates_are_rejected(client):
    r = client.post("/workflow_templates/", json={"name": "empty", "steps": []})
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "VALIDATION_ERROR"

    report = client.post("/workflow_templates/validate", json={"name": "", "steps": []}).json()["data"]
    assert not report["isValid"]
    assert "Template name is required" in report["errors"]

    assert client.post("/workflow_templates/import", json={"data": "{oops"}).status_code == 400


def test_execution_lifecycle(client):
    template = _create(client, [step("a", 1), step("b", 2, dependencies=["a"])])

    started = client.post("/workflow_executions/", json={"templateId": template["id"], "input": {"n": 1}})
    assert started.status_code == 202
    run_id = started.json()["data"]["executionId"]

    status = _wait_for_terminal(client, run_id)
    assert status["status"] == "completed"
    assert status["completedSteps"] == 2
    assert [s["stepId"] for s in status["stepStatuses"]] == ["a", "b"]

    history = client.get("/workflow_executions/history", params={"templateId": template["id"]}).json()["data"]
    assert history["total"] == 1
    assert client.get("/workflow_executions/active").json()["data"] == []

    logs = client.get(f"/workflow_executions/{run_id}/logs").json()["data"]
    assert logs[0]["message"] == "Workflow execution started"

    metrics = client.get("/workflow_executions/metrics", params={"templateId": template["id"]}).json()["data"]
    assert metrics["completedExecutions"] == 1

    refused = client.post(f"/workflow_executions/{run_id}/pause")
    assert refused.status_code == 409
    assert refused.json()["error"]["code"] == "WORKFLOW_STATE_ERROR"


def test_execution_errors(client):
    unknown = client.post("/workflow_executions/", json={"templateId": "nope"})
    assert unknown.status_code == 404

    template = _create(client, inputSchema={"type": "object", "required": ["orderId"]})
    bad_input = client.post("/workflow_executions/", json={"templateId": template["id"], "input": {}})
    assert bad_input.status_code == 400
    assert bad_input.json()["error"]["code"] == "INPUT_VALIDATION_FAILED"

    assert client.get("/workflow_executions/missing").status_code == 404
    assert client.post("/workflow_executions/missing/cancel", json={"reason": "x"}).status_code == 404


def test_health_route(client, mock_client):
    assert client.get("/health").json() == {"success": True, "data": {"status": "healthy"}}

    health = mock_client.get("/health").json()["data"]
    assert health["status"] == "healthy"
    assert health["details"]["templatesCount"] == 2


def test_mock_engine_behind_the_api(mock_client):
    started = mock_client.post("/workflow_executions/", json={"templateId": "template_001"})
    assert started.status_code == 202
    run_id = started.json()["data"]["executionId"]

    status = _wait_for_terminal(mock_client, run_id)
    assert status["status"] == "completed"
    assert status["output"]["stepsCompleted"] == 3


def test_websocket_streams_run_events(client):
    template = _create(client, [step("wait", 1, handler="delay", handlerConfig={"duration_ms": 1000})])
    run_id = client.post("/workflow_executions/", json={"templateId": template["id"]}).json()["data"]["executionId"]

    with client.websocket_connect(f"/ws/executions/{run_id}") as ws:
        assert ws.receive_json() == {"type": "connection_established", "runId": run_id}
        types = []
        while True:
            message = ws.receive_json()
            types.append(message["event"]["type"])
            if types[-1] == "completed":
                break
    assert "step_completed" in types


def test_websocket_refused_without_realtime(mock_client):
    with mock_client.websocket_connect("/ws/executions/any") as ws:
        assert ws.receive_json()["type"] == "error"


def test_websocket_closes_for_a_finished_run(client):
    template = _create(client)
    run_id = client.post("/workflow_executions/", json={"templateId": template["id"]}).json()["data"]["executionId"]
    _wait_for_terminal(client, run_id)

    with client.websocket_connect(f"/ws/executions/{run_id}") as ws:
        assert ws.receive_json()["type"] == "connection_established"
        final = ws.receive_json()
        assert final["type"] == "status"
        assert final["status"]["status"] == "completed"


def test_websocket_rejects_unknown_run(client):
    with client.websocket_connect("/ws/executions/missing") as ws:
        message = ws.receive_json()
        assert message["type"] == "error"
        assert "missing" in message["message"]
