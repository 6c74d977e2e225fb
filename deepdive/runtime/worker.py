from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
import traceback
from typing import Any

from deepdive.config.load_config import WorkerConfig
from deepdive.research.engine import Completed, ResearchEngine
from deepdive.research.errors import OracleFailure, ResearchError, SubstrateFailure
from deepdive.research.invocation import TaskInvocation
from deepdive.research.state import TaskStatus
from deepdive.runtime.substrate import DurableTaskContext
from deepdive.storage.sqlite_store import SQLiteStore, default_db_path
from deepdive.utils.cancel import CancelledError


logger = logging.getLogger(__name__)


class RunWorker:
    """Pool of worker threads executing queued research tasks.

    Each thread owns its own SQLite connection. A task that has to wait for its
    children is parked (`waiting`) and holds no thread; it is re-queued by the
    store once its children are ready.
    """

    def __init__(
        self,
        *,
        engine: ResearchEngine | None,
        dry_run_engine: ResearchEngine | None = None,
        db_path: str | None = None,
        config: WorkerConfig | None = None,
    ) -> None:
        self._db_path = db_path or default_db_path()
        self._config = config or WorkerConfig()
        self._engine = engine
        self._dry_run_engine = dry_run_engine
        self._threads: list[threading.Thread] = []
        self._stop = threading.Event()

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def status_snapshot(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "threads": sum(1 for t in self._threads if t.is_alive()),
            "concurrency": int(self._config.concurrency),
            "poll_interval_s": float(self._config.poll_interval_s),
            "db_path": self._db_path,
        }

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._run_loop, name=f"deepdive-worker-{i}", daemon=True)
            for i in range(int(self._config.concurrency))
        ]
        for t in self._threads:
            t.start()
        logger.info("Started %d worker threads (db=%s)", len(self._threads), self._db_path)

    def stop(self, *, timeout_s: float = 5.0) -> None:
        self._stop.set()
        for t in self._threads:
            t.join(timeout=timeout_s)
        self._threads = []

    def _run_loop(self) -> None:
        store = SQLiteStore(self._db_path)
        try:
            while not self._stop.is_set():
                try:
                    claimed = store.claim_next_queued_task()
                except sqlite3.OperationalError as e:
                    logger.warning("Task claim failed, retrying: %s", e)
                    self._stop.wait(self._config.poll_interval_s)
                    continue
                if claimed is None:
                    self._stop.wait(self._config.poll_interval_s)
                    continue
                try:
                    self.execute_one(store, claimed)
                except Exception:
                    # The store itself failed while recording the outcome; the task stays
                    # 'running' and is re-queued by reconcile_running_tasks on restart.
                    logger.exception("Worker failed to record outcome of %s", claimed["task_id"])
        finally:
            store.close()

    def _engine_for(self, row: Any) -> ResearchEngine:
        try:
            task_config = json.loads(str(row["config_json"] or "{}"))
        except json.JSONDecodeError:
            task_config = {}
        if bool(task_config.get("dry_run")):
            if self._dry_run_engine is None:
                raise OracleFailure("Dry-run oracle is not configured for this worker.")
            return self._dry_run_engine
        if self._engine is None:
            raise OracleFailure("Oracle is not configured (missing OPENAI_API_KEY?).")
        return self._engine

    def _load_invocation(self, engine: ResearchEngine, row: Any) -> TaskInvocation:
        if row["state_json"]:
            return TaskInvocation.from_json(str(row["state_json"]))
        return engine.start(task_id=str(row["task_id"]), topic=str(row["topic"]), depth=int(row["depth"]))

    def execute_one(self, store: SQLiteStore, row: Any) -> None:
        """Advance one claimed task until it completes, fails or parks."""
        task_id = str(row["task_id"])
        ctx = DurableTaskContext(store, task_id=task_id)
        try:
            engine = self._engine_for(row)
            inv = self._load_invocation(engine, row)
            ctx.trace(
                "task_started",
                {"attempt": int(row["attempts"]), "phase": inv.phase.value, "iteration": inv.iteration},
            )
            outcome = engine.advance(ctx, inv)
            if isinstance(outcome, Completed):
                if store.complete_task(task_id, outcome.result):
                    logger.info("Task %s completed (depth=%d)", task_id, inv.depth)
                return
            status = store.suspend_task(task_id)
            logger.debug("Task %s parked as %s waiting on %d children", task_id, status, len(outcome.waiting_on))
        except CancelledError as e:
            n = store.cancel_task_tree(task_id, reason=str(e) or "canceled")
            logger.info("Task %s canceled (%d tasks in subtree)", task_id, n)
        except ResearchError as e:
            logger.warning("Task %s failed (%s): %s", task_id, e.kind, e)
            self._fail(store, task_id, error=str(e), error_kind=e.kind)
        except Exception as e:
            # Never crash the worker loop: unexpected errors fail the task as a substrate failure.
            logger.exception("Task %s crashed", task_id)
            self._fail(
                store,
                task_id,
                error=f"{type(e).__name__}: {e}",
                error_kind=SubstrateFailure.kind,
                details={"traceback": traceback.format_exc()},
            )

    def _fail(
        self,
        store: SQLiteStore,
        task_id: str,
        *,
        error: str,
        error_kind: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        store.fail_task(task_id, error=error, error_kind=error_kind, details=details)
        # Fail-fast: outstanding children of a failed task are no longer needed.
        store.cancel_task_tree(task_id, reason=f"ancestor_failed:{task_id}")

    def run_until_complete(self, task_id: str, *, timeout_s: float | None = None) -> Any:
        """Drive the pool until `task_id` reaches a terminal status; returns its row."""
        started_here = not self.running
        if started_here:
            self.start()
        store = SQLiteStore(self._db_path)
        deadline = time.monotonic() + timeout_s if timeout_s is not None else None
        try:
            while True:
                row = store.get_task(task_id=task_id)
                if row is None:
                    raise SubstrateFailure(f"Task not found: {task_id}")
                if str(row["status"]) in TaskStatus.TERMINAL:
                    return row
                if deadline is not None and time.monotonic() > deadline:
                    store.cancel_task_tree(task_id, reason="timeout")
                    raise SubstrateFailure(f"Task {task_id} timed out after {timeout_s}s")
                time.sleep(self._config.poll_interval_s)
        finally:
            store.close()
            if started_here:
                self.stop()
