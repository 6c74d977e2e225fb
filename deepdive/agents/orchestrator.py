from __future__ import annotations

import logging
from typing import Any

from deepdive.config.load_config import AppConfig, WorkerConfig
from deepdive.llm.openai_compat import OpenAICompatibleChatClient
from deepdive.research.engine import ResearchEngine, validate_request
from deepdive.research.errors import InvalidInput, error_from_kind
from deepdive.research.oracle import ChatOracle, DryRunOracle
from deepdive.research.state import TaskStatus
from deepdive.runtime.worker import RunWorker
from deepdive.storage.sqlite_store import SQLiteStore, default_db_path, new_task_id
from deepdive.utils.cancel import CancelledError


logger = logging.getLogger(__name__)


def build_engine(config: AppConfig, *, dry_run: bool = False, fanout: int = 2) -> ResearchEngine:
    if dry_run:
        oracle = DryRunOracle(
            fanout=fanout, tool_name=config.oracle.tool_name, user_template=config.prompts.user_template
        )
    else:
        client = OpenAICompatibleChatClient(timeout_s=config.oracle.timeout_s)
        oracle = ChatOracle(client, prompts=config.prompts, config=config.oracle)
    return ResearchEngine(oracle, prompts=config.prompts)


class OrchestratorAgent:
    """Entry point for a research invocation: `run(topic, depth, history?) -> str`.

    The root task and every descendant live in SQLite; this class only enqueues
    the root and drives a worker pool until it resolves.
    """

    name = "orchestrator"

    def __init__(
        self,
        engine: ResearchEngine,
        *,
        db_path: str | None = None,
        worker_config: WorkerConfig | None = None,
        max_depth: int | None = None,
        max_topic_chars: int | None = None,
    ) -> None:
        self._engine = engine
        self._db_path = db_path or default_db_path()
        self._max_depth = max_depth
        self._max_topic_chars = max_topic_chars
        self._worker = RunWorker(engine=engine, db_path=self._db_path, config=worker_config)

    @classmethod
    def from_config(
        cls, config: AppConfig, *, db_path: str | None = None, dry_run: bool = False
    ) -> "OrchestratorAgent":
        return cls(
            build_engine(config, dry_run=dry_run),
            db_path=db_path,
            worker_config=config.worker,
            max_depth=config.limits.max_depth,
            max_topic_chars=config.limits.max_topic_chars,
        )

    def submit(
        self,
        topic: str,
        depth: int,
        history: list[dict[str, Any]] | None = None,
        *,
        config: dict[str, Any] | None = None,
    ) -> str:
        """Validate and enqueue a root task; returns its task id."""
        topic, depth = validate_request(topic, depth, max_topic_chars=self._max_topic_chars)
        if self._max_depth is not None and depth > self._max_depth:
            raise InvalidInput(f"depth must be <= {self._max_depth}, got {depth}")

        task_id = new_task_id()
        inv = self._engine.start(task_id=task_id, topic=topic, depth=depth, history=history)
        store = SQLiteStore(self._db_path)
        try:
            store.create_root_task(
                task_id=task_id,
                topic=topic,
                depth=depth,
                state_json=inv.to_json(),
                config=config,
            )
        finally:
            store.close()
        logger.info("Queued research task %s (depth=%d): %s", task_id, depth, topic)
        return task_id

    def wait(self, task_id: str, *, timeout_s: float | None = None) -> str:
        row = self._worker.run_until_complete(task_id, timeout_s=timeout_s)
        return result_from_row(row)

    def run(
        self,
        topic: str,
        depth: int,
        history: list[dict[str, Any]] | None = None,
        *,
        timeout_s: float | None = None,
    ) -> str:
        task_id = self.submit(topic, depth, history)
        return self.wait(task_id, timeout_s=timeout_s)


def result_from_row(row: Any) -> str:
    """Return a terminal task's answer or raise the failure it recorded."""
    status = str(row["status"])
    if status == TaskStatus.COMPLETED:
        return str(row["result"] or "")
    error = str(row["error"] or status)
    if status == TaskStatus.CANCELED:
        raise CancelledError(error)
    if status == TaskStatus.FAILED:
        raise error_from_kind(row["error_kind"], error)
    raise RuntimeError(f"Task {row['task_id']} is not terminal (status={status})")
