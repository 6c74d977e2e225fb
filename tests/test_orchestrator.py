from __future__ import annotations

import json
import tempfile
import threading
import time
from typing import Any, Callable

import pytest

from deepdive.agents.orchestrator import OrchestratorAgent
from deepdive.config.load_config import WorkerConfig, load_app_config
from deepdive.research.engine import ResearchEngine
from deepdive.research.errors import ChildFailure, InvalidInput, OracleFailure, SubstrateFailure
from deepdive.research.messages import assistant_message, tool_call
from deepdive.research.oracle import DryRunOracle
from deepdive.research.state import TaskStatus
from deepdive.storage.sqlite_store import SQLiteStore
from deepdive.utils.cancel import CancelledError


class ThreadSafeOracle:
    """Scripted oracle keyed by the invocation's topic; safe to call from worker threads."""

    tool_name = "research"

    def __init__(self, script: Callable[[str, list[dict[str, Any]], bool], dict[str, Any]]) -> None:
        self.script = script
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def consult(self, history: list[dict[str, Any]], *, allow_decomposition: bool) -> dict[str, Any]:
        topic = next(m["content"] for m in history if m["role"] == "user").removeprefix("Research ")
        with self._lock:
            self.calls.append(topic)
        return self.script(topic, history, allow_decomposition)


def _split(*topics: str) -> dict[str, Any]:
    return assistant_message(
        None,
        [tool_call(f"call_{i}", "research", json.dumps({"topic": t})) for i, t in enumerate(topics, start=1)],
    )


def _tool_results(history: list[dict[str, Any]]) -> list[str]:
    return [m["content"] for m in history if m["role"] == "tool"]


def _agent(oracle: Any, db_path: str) -> OrchestratorAgent:
    cfg = load_app_config()
    engine = ResearchEngine(oracle, prompts=cfg.prompts)
    return OrchestratorAgent(
        engine,
        db_path=db_path,
        worker_config=WorkerConfig(concurrency=4, poll_interval_s=0.01),
        max_depth=cfg.limits.max_depth,
        max_topic_chars=cfg.limits.max_topic_chars,
    )


def _all_tasks(db_path: str) -> list[Any]:
    store = SQLiteStore(db_path)
    try:
        return store._conn.execute("SELECT * FROM tasks ORDER BY task_id;").fetchall()
    finally:
        store.close()


def test_dry_run_tree_completes_with_every_level_resolved() -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = f"{td}/app.db"
        agent = _agent(DryRunOracle(fanout=2), db_path)

        result = agent.run("T", 2, timeout_s=30)

        assert result.startswith("Synthesis for T:")
        rows = _all_tasks(db_path)
        assert len(rows) == 1 + 2 + 4
        assert {r["status"] for r in rows} == {TaskStatus.COMPLETED}
        assert sorted(int(r["depth"]) for r in rows) == [0, 0, 0, 0, 1, 1, 2]
        assert {r["topic"] for r in rows if int(r["depth"]) == 0} == {
            f"T / aspect {i} / aspect {j}" for i in (1, 2) for j in (1, 2)
        }


def test_depth_zero_never_spawns() -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = f"{td}/app.db"
        oracle = ThreadSafeOracle(lambda topic, h, allow: _split("x") if allow else assistant_message("A"))
        agent = _agent(oracle, db_path)

        assert agent.run("T", 0, timeout_s=30) == "A"
        assert len(_all_tasks(db_path)) == 1


def test_depth_zero_with_an_oracle_that_always_splits_completes_without_children() -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = f"{td}/app.db"
        oracle = ThreadSafeOracle(lambda topic, h, allow: _split("x"))
        agent = _agent(oracle, db_path)

        assert isinstance(agent.run("X", 0, timeout_s=30), str)
        rows = _all_tasks(db_path)
        assert [r["status"] for r in rows] == [TaskStatus.COMPLETED]
        assert oracle.calls == ["X", "X"]


def test_depth_one_synthesizes_child_answers_in_request_order() -> None:
    def _script(topic: str, history: list[dict[str, Any]], allow: bool) -> dict[str, Any]:
        if topic == "T":
            results = _tool_results(history)
            return assistant_message(f"Synthesis({','.join(results)})") if results else _split("S1", "S2")
        return assistant_message("A1" if topic == "S1" else "A2")

    with tempfile.TemporaryDirectory() as td:
        agent = _agent(ThreadSafeOracle(_script), f"{td}/app.db")
        assert agent.run("T", 1, timeout_s=30) == "Synthesis(A1,A2)"


def test_siblings_run_concurrently() -> None:
    barrier = threading.Barrier(2, timeout=5)

    def _script(topic: str, history: list[dict[str, Any]], allow: bool) -> dict[str, Any]:
        if topic == "T":
            return assistant_message("both done") if _tool_results(history) else _split("S1", "S2")
        # Only passes if both children are being consulted at the same time.
        barrier.wait()
        return assistant_message(f"answer {topic}")

    with tempfile.TemporaryDirectory() as td:
        agent = _agent(ThreadSafeOracle(_script), f"{td}/app.db")
        assert agent.run("T", 1, timeout_s=30) == "both done"


def test_child_oracle_failure_propagates_with_subtopic_chain() -> None:
    def _script(topic: str, history: list[dict[str, Any]], allow: bool) -> dict[str, Any]:
        if topic == "T":
            return assistant_message("unreachable") if _tool_results(history) else _split("good", "mid")
        if topic == "mid":
            return assistant_message("unreachable") if _tool_results(history) else _split("bad")
        if topic == "bad":
            raise OracleFailure("model unavailable")
        return assistant_message("fine")

    with tempfile.TemporaryDirectory() as td:
        db_path = f"{td}/app.db"
        oracle = ThreadSafeOracle(_script)
        agent = _agent(oracle, db_path)

        with pytest.raises(ChildFailure) as e:
            agent.run("T", 2, timeout_s=30)

        message = str(e.value)
        assert "'mid'" in message
        assert "'bad'" in message
        assert "model unavailable" in message
        # Fail-fast: neither parent was consulted again after the failure.
        assert oracle.calls.count("T") == 1
        assert oracle.calls.count("mid") == 1

        statuses = {r["topic"]: r["status"] for r in _all_tasks(db_path)}
        assert statuses["T"] == TaskStatus.FAILED
        assert statuses["mid"] == TaskStatus.FAILED
        assert statuses["bad"] == TaskStatus.FAILED
        assert statuses["good"] in {TaskStatus.COMPLETED, TaskStatus.CANCELED}


def test_invalid_input_creates_no_task() -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = f"{td}/app.db"
        oracle = ThreadSafeOracle(lambda topic, h, allow: assistant_message("A"))
        agent = _agent(oracle, db_path)

        with pytest.raises(InvalidInput):
            agent.run("T", -1)
        with pytest.raises(InvalidInput):
            agent.run("", 1)
        with pytest.raises(InvalidInput):
            agent.run("T", 99)
        assert oracle.calls == []
        assert _all_tasks(db_path) == []


def test_cancelled_root_surfaces_cancelled_error() -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = f"{td}/app.db"
        agent = _agent(DryRunOracle(), db_path)
        task_id = agent.submit("T", 2)

        store = SQLiteStore(db_path)
        try:
            assert store.cancel_task_tree(task_id, reason="user_cancel") == 1
        finally:
            store.close()

        with pytest.raises(CancelledError):
            agent.wait(task_id, timeout_s=30)


def test_interrupted_task_resumes_after_reconcile() -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = f"{td}/app.db"
        agent = _agent(DryRunOracle(), db_path)
        task_id = agent.submit("T", 1)

        store = SQLiteStore(db_path)
        try:
            # A previous process claimed the task and died.
            store.claim_next_queued_task()
            assert store.reconcile_running_tasks() == 1
        finally:
            store.close()

        assert agent.wait(task_id, timeout_s=30).startswith("Synthesis for T:")


def test_timeout_cancels_tree_and_raises_substrate_failure() -> None:
    def _script(topic: str, history: list[dict[str, Any]], allow: bool) -> dict[str, Any]:
        time.sleep(0.5)
        return assistant_message("late")

    with tempfile.TemporaryDirectory() as td:
        db_path = f"{td}/app.db"
        agent = _agent(ThreadSafeOracle(_script), db_path)
        task_id = agent.submit("T", 0)
        with pytest.raises(SubstrateFailure):
            agent.wait(task_id, timeout_s=0.2)

        rows = _all_tasks(db_path)
        assert [r["status"] for r in rows] == [TaskStatus.CANCELED]
