"""HTTP surface of the orchestrator."""

import time

import pytest
from fastapi.testclient import TestClient

from statuscheck.services.orchestrator import main
from statuscheck.services.orchestrator.domain import RunPhase, RunRecord
from statuscheck.services.orchestrator.service import OrchestratorService
from statuscheck.services.orchestrator.store import InMemoryRunStore
from tests.fakes import fake_collaborators, fast_config, no_sleep


@pytest.fixture
def api(monkeypatch):
    collaborators, lookup, notifier, checker = fake_collaborators({"p1": "A", "p2": "B", "p3": "A"})
    service = OrchestratorService(
        InMemoryRunStore(),
        collaborators,
        service_name="test",
        default_config=fast_config(),
        sleep=no_sleep,
    )
    monkeypatch.setattr(main, "service", service)
    with TestClient(main.app) as client:
        yield client, notifier


def _poll(client, workflow_id):
    for _ in range(500):
        body = client.get(f"/payments/check-status/{workflow_id}").json()
        if body["status"] != "RUNNING":
            return body
        time.sleep(0.01)
    raise AssertionError("run did not finish")


def test_start_returns_202_and_completes(api):
    client, notifier = api
    notifier.failing_ids = {"p2"}

    resp = client.post("/payments/check-status", json={"paymentIds": ["p1", "p2", "p3", "unknown-1"]})
    assert resp.status_code == 202
    body = resp.json()
    assert body["status"] == "STARTED"

    final = _poll(client, body["workflowId"])
    assert final["status"] == "COMPLETED"
    assert final["error"] is None
    assert final["result"]["successful"] == {"A": ["p1", "p3"], "B": []}
    assert final["result"]["gatewayLookupFailed"] == ["unknown-1"]
    failed = final["result"]["failed"]["B"][0]
    assert failed == {
        "chunkIndex": 0,
        "paymentIds": ["p2"],
        "error": "notifier returned 503",
        "stage": "LOOKUP_INDEX_NOTIFY",
    }
    progress = final["progress"]
    assert progress["totalPayments"] == 4
    assert progress["chunksTotal"] == progress["chunksCompleted"] == 2
    assert progress["chunksFailed"] == 1
    assert progress["currentPhase"] == "COMPLETED"


def test_unknown_workflow_is_not_found(api):
    client, _ = api
    resp = client.get("/payments/check-status/does-not-exist")
    assert resp.status_code == 200
    assert resp.json() == {
        "workflowId": "does-not-exist",
        "status": "NOT_FOUND",
        "progress": None,
        "result": None,
        "error": None,
    }


@pytest.mark.parametrize(
    "payload",
    [
        {},
        {"paymentIds": []},
        {"paymentIds": ["p1", ""]},
        {"paymentIds": ["p1", "   "]},
        {"paymentIds": "p1"},
        {"paymentIds": ["p1"], "config": {"chunkSize": 0}},
    ],
)
def test_invalid_requests_are_rejected_with_400(api, payload):
    client, _ = api
    resp = client.post("/payments/check-status", json=payload)
    assert resp.status_code == 400


def test_too_many_ids_are_rejected(api):
    client, _ = api
    resp = client.post("/payments/check-status", json={"paymentIds": [f"p{i}" for i in range(10_001)]})
    assert resp.status_code == 400


def test_config_override_is_applied(api):
    client, notifier = api
    resp = client.post(
        "/payments/check-status",
        json={"paymentIds": ["p1", "p3"], "config": {"chunkSize": 1}},
    )
    final = _poll(client, resp.json()["workflowId"])
    assert final["progress"]["chunksTotal"] == 2
    assert [ids for _, ids, _ in notifier.calls] == [["p1"], ["p3"]]


def test_idempotency_key_header_returns_same_workflow(api):
    client, _ = api
    headers = {"Idempotency-Key": "client-batch-7"}
    first = client.post("/payments/check-status", json={"paymentIds": ["p1"]}, headers=headers)
    second = client.post("/payments/check-status", json={"paymentIds": ["p1"]}, headers=headers)
    assert first.status_code == second.status_code == 202
    assert first.json()["workflowId"] == second.json()["workflowId"]


def test_health_and_metrics(api):
    client, _ = api
    assert client.get("/health").json() == {"ok": True}
    client.get("/payments/check-status/x")
    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "http_requests_total" in metrics.text


def test_failed_run_surfaces_error(api):
    """A run that hit an internal failure reports FAILED with its error and no result."""

    client, _ = api
    store = main.service.store
    store.create_run(RunRecord(run_id="run-x", payment_ids=["p1"], config=fast_config()))
    store.transition("run-x", RunPhase.FAILED, "internal_failure", error="journal unavailable")

    body = client.get("/payments/check-status/run-x").json()
    assert body["status"] == "FAILED"
    assert body["error"] == "journal unavailable"
    assert body["result"] is None
    assert body["progress"]["currentPhase"] == "FAILED"
