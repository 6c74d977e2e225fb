from __future__ import annotations

import os
import tempfile

import pytest
from fastapi.testclient import TestClient

from deepdive.api.app import create_app
from deepdive.storage.sqlite_store import SQLiteStore


def _env(monkeypatch: pytest.MonkeyPatch, td: str) -> str:
    db_path = os.path.join(td, "app.db")
    monkeypatch.setenv("DEEPDIVE_SQLITE_PATH", db_path)
    monkeypatch.setenv("DEEPDIVE_ENABLE_WORKER", "0")
    return db_path


def test_create_get_and_list_task(monkeypatch: pytest.MonkeyPatch) -> None:
    with tempfile.TemporaryDirectory() as td:
        _env(monkeypatch, td)
        with TestClient(create_app()) as client:
            resp = client.post("/api/v1/tasks", json={"topic": "Quantum computing", "depth": 1, "dry_run": True})
            assert resp.status_code == 200
            task = resp.json()["task"]
            assert task["status"] == "queued"
            assert task["depth"] == 1

            got = client.get(f"/api/v1/tasks/{task['task_id']}").json()["task"]
            assert got["topic"] == "Quantum computing"
            assert got["parent_id"] is None

            page = client.get("/api/v1/tasks").json()
            assert [i["task_id"] for i in page["items"]] == [task["task_id"]]
            assert page["has_more"] is False

            out = client.get(f"/api/v1/tasks/{task['task_id']}/output")
            assert out.status_code == 404
            assert out.json()["error"]["details"]["status"] == "queued"

            events = client.get(f"/api/v1/tasks/{task['task_id']}/events?include_payload=true").json()
            assert [e["event_type"] for e in events["items"]] == ["task_created"]
            assert events["items"][0]["payload"]["depth"] == 1


@pytest.mark.parametrize(
    "body",
    [
        {"topic": "", "depth": 1, "dry_run": True},
        {"topic": "   ", "depth": 1, "dry_run": True},
        {"topic": "T", "depth": -1, "dry_run": True},
        {"topic": "T", "depth": 99, "dry_run": True},
        {"depth": 1, "dry_run": True},
    ],
)
def test_create_task_rejects_invalid_input(monkeypatch: pytest.MonkeyPatch, body: dict) -> None:
    with tempfile.TemporaryDirectory() as td:
        _env(monkeypatch, td)
        with TestClient(create_app()) as client:
            resp = client.post("/api/v1/tasks", json=body)
            assert resp.status_code == 400
            assert resp.json()["error"]["code"] == "invalid_argument"


def test_create_task_without_api_key_is_unavailable(monkeypatch: pytest.MonkeyPatch) -> None:
    with tempfile.TemporaryDirectory() as td:
        _env(monkeypatch, td)
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        with TestClient(create_app()) as client:
            resp = client.post("/api/v1/tasks", json={"topic": "T", "depth": 1})
            assert resp.status_code == 503
            assert resp.json()["error"]["details"]["missing"] == ["OPENAI_API_KEY"]


def test_completed_task_output_and_children(monkeypatch: pytest.MonkeyPatch) -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = _env(monkeypatch, td)
        store = SQLiteStore(db_path)
        try:
            store.create_root_task(task_id="root", topic="T", depth=1, state_json=None)
            store.spawn_child_task(task_id="root.0.0", parent_id="root", request_id="c1", topic="S1", depth=0)
            store._conn.execute("UPDATE tasks SET status = 'running' WHERE task_id = 'root';")
            store._conn.commit()
            store.complete_task("root", "final answer")
        finally:
            store.close()

        with TestClient(create_app()) as client:
            out = client.get("/api/v1/tasks/root/output")
            assert out.status_code == 200
            assert out.json()["result"] == "final answer"

            children = client.get("/api/v1/tasks/root/children").json()["items"]
            assert [(c["task_id"], c["request_id"], c["depth"]) for c in children] == [("root.0.0", "c1", 0)]

            assert client.get("/api/v1/tasks/missing").status_code == 404


def test_cancel_task_cancels_subtree(monkeypatch: pytest.MonkeyPatch) -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = _env(monkeypatch, td)
        with TestClient(create_app()) as client:
            task_id = client.post("/api/v1/tasks", json={"topic": "T", "depth": 1, "dry_run": True}).json()["task"][
                "task_id"
            ]
            store = SQLiteStore(db_path)
            try:
                store.spawn_child_task(
                    task_id=f"{task_id}.0.0", parent_id=task_id, request_id="c1", topic="S1", depth=0
                )
            finally:
                store.close()

            resp = client.post(f"/api/v1/tasks/{task_id}/cancel", json={"reason": "no longer needed"})
            assert resp.status_code == 200
            assert resp.json()["n_canceled"] == 2

            task = client.get(f"/api/v1/tasks/{task_id}").json()["task"]
            assert task["status"] == "canceled"
            assert task["error"] == "no longer needed"


def test_health_and_worker_status(monkeypatch: pytest.MonkeyPatch) -> None:
    with tempfile.TemporaryDirectory() as td:
        _env(monkeypatch, td)
        with TestClient(create_app()) as client:
            assert client.get("/api/v1/healthz").json() == {"status": "ok"}
            assert client.get("/api/v1/version").json()["service"] == "deepdive"
            worker = client.get("/api/v1/system/worker").json()
            assert worker["worker"]["enabled"] is False


def test_task_list_pages_with_cursor(monkeypatch: pytest.MonkeyPatch) -> None:
    with tempfile.TemporaryDirectory() as td:
        _env(monkeypatch, td)
        with TestClient(create_app()) as client:
            ids = [
                client.post("/api/v1/tasks", json={"topic": f"T{i}", "depth": 0, "dry_run": True}).json()["task"][
                    "task_id"
                ]
                for i in range(3)
            ]
            first = client.get("/api/v1/tasks?limit=2").json()
            assert first["has_more"] is True
            second = client.get(f"/api/v1/tasks?limit=2&cursor={first['next_cursor']}").json()
            seen = [i["task_id"] for i in first["items"] + second["items"]]
            assert sorted(seen) == sorted(ids)

            bad = client.get(f"/api/v1/tasks/{ids[0]}/events?cursor={first['next_cursor']}")
            assert bad.status_code == 400
