"""
Tests for the coordinator FastAPI app: HTTP intake and the worker WebSocket.
"""

import time

import pytest
from fastapi.testclient import TestClient

from compute.storage import TaskQueue, TaskStore
from ethml.server.api import create_app
from ethml.server.coordinator import Coordinator
from ethml.server.event_log import DispatchEventLog
from ethml.server.mocks import InMemoryLedger


@pytest.fixture
def coordinator(tmp_path):
    return Coordinator(
        ledger=InMemoryLedger(first_task_id=100),
        queue=TaskQueue(str(tmp_path / "queue.db")),
        store=TaskStore(str(tmp_path / "tasks.db")),
        event_log=DispatchEventLog(path=str(tmp_path / "events.jsonl"), enabled=True),
        reply_timeout=5.0,
        heartbeat_interval=0.5,
        heartbeat_timeout=30.0,
        ledger_backoff_base=0.0,
    )


@pytest.fixture
def client(coordinator):
    with TestClient(create_app(coordinator)) as test_client:
        yield test_client


def wait_for_status(client, task_id, status, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get(f"/api/tasks/{task_id}").json()
        if body.get("dispatch") and body["dispatch"]["status"] == status:
            return body
        time.sleep(0.02)
    raise AssertionError(f"task {task_id} never reached {status}")


class TestHttpIntake:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["workers"] == 0

    def test_create_task_issues_on_ledger_and_enqueues(self, client, coordinator):
        response = client.post("/api/tasks", json={"model_id": 1, "data_point": "1,2", "tip": "0.1"})
        assert response.status_code == 200
        task_id = response.json()["task_id"]
        assert task_id == 100
        assert coordinator.ledger.tasks[100]["tip"] == "0.1"
        assert coordinator.queue.queued_task_ids() == [100]

    def test_create_job_is_idempotent(self, client):
        payload = {"task_id": 5, "model_id": 1, "data_point": "x"}
        assert client.post("/api/jobs", json=payload).json()["enqueued"] is True
        assert client.post("/api/jobs", json=payload).json()["enqueued"] is False

    def test_create_job_validates_input(self, client):
        response = client.post("/api/jobs", json={"task_id": -1, "model_id": 1, "data_point": "x"})
        assert response.status_code == 422

    def test_unknown_task_is_404(self, client):
        assert client.get("/api/tasks/999").status_code == 404

    def test_task_status_merges_ledger_and_local_view(self, client):
        task_id = client.post("/api/tasks", json={"model_id": 3, "data_point": "x"}).json()["task_id"]
        body = client.get(f"/api/tasks/{task_id}").json()
        assert body["ledger"]["model_id"] == 3
        assert body["dispatch"]["status"] == "pending"
        assert body["settlement"] is None


class TestWorkerSocket:
    def test_worker_receives_dispatch_and_task_completes(self, client, coordinator):
        with client.websocket_connect("/ws/worker") as ws:
            welcome = ws.receive_json()
            assert welcome["type"] == "welcome"
            assert welcome["heartbeat_interval"] == 0.5
            ws.send_json({"type": "status", "cpu_load": 10, "mem_load": 20, "active_jobs": 0})

            task_id = client.post("/api/tasks", json={"model_id": 1, "data_point": "1,2"}).json()["task_id"]
            dispatch = ws.receive_json()
            assert dispatch["type"] == "dispatch"
            assert dispatch["task_id"] == task_id
            assert dispatch["data_point"] == "1,2"

            ws.send_json(
                {
                    "type": "result",
                    "request_id": dispatch["request_id"],
                    "task_id": task_id,
                    "prediction": 358,
                    "confidence": 0.9,
                }
            )
            body = wait_for_status(client, task_id, "completed")
            assert body["settlement"]["submitted"] is True
            assert body["ledger"]["settled"] is True
            assert body["ledger"]["prediction"] == 358

            workers = client.get("/api/workers").json()
            assert workers["count"] == 1
            assert workers["workers"][0]["worker_id"] == welcome["worker_id"]

        assert coordinator.ledger.submissions == [(task_id, 358)]
        stats = client.get("/stats").json()
        assert stats["counters"]["completed"] == 1
        assert stats["latency_seconds"]["count"] == 1

    def test_disconnect_requeues_job(self, client, coordinator):
        with client.websocket_connect("/ws/worker") as ws:
            ws.receive_json()
            task_id = client.post("/api/tasks", json={"model_id": 1, "data_point": "x"}).json()["task_id"]
            assert ws.receive_json()["task_id"] == task_id

        body = wait_for_status(client, task_id, "pending")
        # The drain loop may pick the job up once more before it notices the pool is empty.
        assert body["dispatch"]["last_error"] in ("worker_disconnected", "no_workers_available")
        assert coordinator.stats.requeued("worker_disconnected") == 1
        assert client.get("/api/workers").json()["count"] == 0
        assert coordinator.queue.pending_count() + coordinator.queue.inflight_count() == 1
