"""
Tests for the HTTP API
"""
import pytest
from fastapi.testclient import TestClient

from conftest import make_edge as E, make_node as N, EchoServices

LINEAR = {
    "nodes": [N("in", "data-input", path="$.text"), N("ai", "ai-text"), N("out", "data-output")],
    "edges": [E("in", "value", "ai", "prompt"), E("ai", "text", "out", "data")],
}


@pytest.fixture
def client():
    from nodeflow.api.server import create_app
    from nodeflow.core.execution import ExecutionEngine, RetryPolicy

    app = create_app(engine=ExecutionEngine(retry_policy=RetryPolicy(base_delay=0, jitter=0)), services=EchoServices())
    return TestClient(app)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"

    assert client.get("/").json()["service"] == "nodeflow"


def test_execute_returns_record(client):
    response = client.post(
        "/api/v1/workflows/wf-7/execute",
        json={"workflow": LINEAR, "input": {"text": "hi"}, "options": {"verbose": True}},
    )
    assert response.status_code == 200
    record = response.json()
    assert record["workflowId"] == "wf-7"
    assert record["status"] == "Completed"
    assert record["output"] == "ECHO:hi"
    assert record["input"] == {"text": "hi"}
    assert len(record["executionLog"]) == 3
    assert record["executionLog"][1]["outputs"] == {"text": "ECHO:hi"}


def test_execute_failed_workflow_is_still_a_record(client):
    cyclic = {
        "nodes": [N("a", "data-transform"), N("b", "data-transform")],
        "edges": [E("a", "output", "b", "input"), E("b", "output", "a", "input")],
    }
    response = client.post("/api/v1/workflows/wf-8/execute", json={"workflow": cyclic})

    assert response.status_code == 200
    record = response.json()
    assert record["status"] == "Failed"
    assert "Cycle" in record["errorMessage"]
    assert record["executionLog"] == []


def test_execute_rejects_bad_options(client):
    response = client.post(
        "/api/v1/workflows/wf-9/execute",
        json={"workflow": LINEAR, "options": {"concurrency": 0}},
    )
    assert response.status_code == 422


def test_validate(client):
    response = client.post("/api/v1/validate", json={"workflow": LINEAR})
    assert response.status_code == 200
    body = response.json()
    assert body["valid"] is True
    assert body["nodes"] == 3
    assert body["outputs"] == ["out"]


def test_validate_reports_problems(client):
    broken = {"nodes": [N("a", "nope")], "edges": [E("a", "x", "b", "y")]}
    response = client.post("/api/v1/validate", json={"workflow": broken})

    assert response.status_code == 422
    detail = response.json()["detail"]
    assert detail["valid"] is False
    assert detail["errorKind"] == "GraphInvalid"
    assert any("Unknown node type" in problem for problem in detail["problems"])


def test_execute_honours_deadline_ms():
    from nodeflow.api.server import create_app
    from nodeflow.core.execution import ExecutionEngine
    from conftest import SlowServices

    app = create_app(engine=ExecutionEngine(), services=SlowServices(delay=5))
    response = TestClient(app).post(
        "/api/v1/workflows/wf-10/execute",
        json={"workflow": LINEAR, "input": {"text": "hi"}, "options": {"deadlineMs": 100}},
    )

    assert response.status_code == 200
    record = response.json()
    assert record["status"] == "TimedOut"
    assert record["executionTimeMs"] < 3000
    assert [entry["state"] for entry in record["executionLog"]] == ["Succeeded", "Cancelled", "Skipped"]
