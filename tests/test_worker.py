from __future__ import annotations

import json
import tempfile
from typing import Any

from deepdive.config.load_config import load_app_config
from deepdive.research.engine import ResearchEngine
from deepdive.research.oracle import DryRunOracle
from deepdive.research.state import TaskStatus
from deepdive.runtime.worker import RunWorker
from deepdive.storage.sqlite_store import SQLiteStore


class _ExplodingOracle:
    tool_name = "research"

    def consult(self, history: list[dict[str, Any]], *, allow_decomposition: bool) -> dict[str, Any]:
        raise KeyError("unexpected")


def _engine(oracle: Any) -> ResearchEngine:
    return ResearchEngine(oracle, prompts=load_app_config().prompts)


def _claim_root(store: SQLiteStore, *, dry_run: bool, depth: int = 0) -> Any:
    store.create_root_task(task_id="root", topic="T", depth=depth, state_json=None, config={"dry_run": dry_run})
    row = store.claim_next_queued_task()
    assert row is not None
    return row


def test_dry_run_tasks_use_the_dry_run_engine() -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = f"{td}/app.db"
        store = SQLiteStore(db_path)
        try:
            worker = RunWorker(engine=None, dry_run_engine=_engine(DryRunOracle()), db_path=db_path)
            worker.execute_one(store, _claim_root(store, dry_run=True))

            row = store.get_task(task_id="root")
            assert row["status"] == TaskStatus.COMPLETED
            assert row["result"] == "Findings for T."
            assert json.loads(row["state_json"])["history"][-1]["role"] == "assistant"
        finally:
            store.close()


def test_missing_oracle_fails_task_as_oracle_failure() -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = f"{td}/app.db"
        store = SQLiteStore(db_path)
        try:
            worker = RunWorker(engine=None, dry_run_engine=_engine(DryRunOracle()), db_path=db_path)
            worker.execute_one(store, _claim_root(store, dry_run=False))

            row = store.get_task(task_id="root")
            assert row["status"] == TaskStatus.FAILED
            assert row["error_kind"] == "oracle_failure"
        finally:
            store.close()


def test_unexpected_exception_is_recorded_as_substrate_failure() -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = f"{td}/app.db"
        store = SQLiteStore(db_path)
        try:
            worker = RunWorker(engine=_engine(_ExplodingOracle()), db_path=db_path)
            worker.execute_one(store, _claim_root(store, dry_run=False))

            row = store.get_task(task_id="root")
            assert row["status"] == TaskStatus.FAILED
            assert row["error_kind"] == "substrate_failure"
            assert "KeyError" in row["error"]
            evt = store.get_latest_event(task_id="root", event_type="task_failed")
            assert "traceback" in json.loads(evt["payload_json"])
        finally:
            store.close()


def test_decomposing_task_parks_and_trace_records_each_stage() -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = f"{td}/app.db"
        store = SQLiteStore(db_path)
        try:
            worker = RunWorker(engine=None, dry_run_engine=_engine(DryRunOracle(fanout=2)), db_path=db_path)
            worker.execute_one(store, _claim_root(store, dry_run=True, depth=1))

            assert store.get_task(task_id="root")["status"] == TaskStatus.WAITING
            children = store.list_children(task_id="root")
            assert [c["task_id"] for c in children] == ["root.0.0", "root.0.1"]
            assert {int(c["depth"]) for c in children} == {0}

            types = [e["event_type"] for e in store.iter_events("root")]
            for expected in ("task_created", "task_started", "oracle_request", "oracle_response", "decomposition"):
                assert expected in types
            assert types.count("child_spawned") == 2
            assert types[-1] == "task_suspended"
        finally:
            store.close()


def test_status_snapshot_reports_configuration() -> None:
    worker = RunWorker(engine=None, db_path="unused.db")
    snap = worker.status_snapshot()
    assert snap["running"] is False
    assert snap["threads"] == 0
    assert snap["concurrency"] == 4
