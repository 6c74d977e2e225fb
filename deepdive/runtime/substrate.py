from __future__ import annotations

import logging
import sqlite3
import time
from typing import Any, Callable

from deepdive.research.engine import HandleState, TaskHandle
from deepdive.research.errors import SubstrateFailure
from deepdive.research.invocation import TaskInvocation
from deepdive.research.state import TaskStatus
from deepdive.storage.sqlite_store import ParentNotActiveError, SQLiteStore
from deepdive.utils.cancel import CancellationToken, CancelledError


logger = logging.getLogger(__name__)


class DurableTaskContext:
    """Binds one task invocation to the SQLite substrate.

    - durable_step: replays the recorded result if the step already ran.
    - spawn: creates (or re-addresses) a child task row.
    - poll: reads a child's status without blocking; waiting is done by the worker
      parking the task until its children are ready.
    """

    def __init__(self, store: SQLiteStore, *, task_id: str, cancel: CancellationToken | None = None) -> None:
        self.store = store
        self.task_id = task_id
        self.cancel = cancel or CancellationToken()

    def trace(self, event_type: str, payload: dict[str, Any]) -> None:
        try:
            self.store.append_event(self.task_id, event_type, payload)
        except sqlite3.Error as e:
            raise SubstrateFailure(f"Failed to record {event_type} event: {e}") from e

    def check_cancelled(self) -> None:
        """Check both the in-memory token and the DB-backed task status/cancel requests."""
        self.cancel.raise_if_cancelled()
        try:
            row = self.store.get_task(task_id=self.task_id)
            requested = self.store.is_cancel_requested(target_id=self.task_id)
        except sqlite3.Error as e:
            raise SubstrateFailure(f"Failed to read task state: {e}") from e
        if row is None:
            raise SubstrateFailure(f"Task disappeared from store: {self.task_id}")
        if str(row["status"]) == TaskStatus.CANCELED:
            self.cancel.request_cancel(str(row["error"] or "canceled"))
            self.cancel.raise_if_cancelled()
        if requested:
            self.cancel.request_cancel("cancel_requested")
            self.store.acknowledge_cancel(target_id=self.task_id)
            raise CancelledError("cancel_requested")

    def durable_step(self, key: str, fn: Callable[[], Any]) -> Any:
        try:
            row = self.store.get_step(task_id=self.task_id, step_key=key)
        except sqlite3.Error as e:
            raise SubstrateFailure(f"Failed to read step {key!r}: {e}") from e
        if row is not None:
            logger.debug("Replaying recorded step %s/%s", self.task_id, key)
            return self.store.decode_step(row)

        started = time.time()
        result = fn()
        try:
            recorded = self.store.record_step(task_id=self.task_id, step_key=key, result=result)
        except sqlite3.Error as e:
            raise SubstrateFailure(f"Failed to record step {key!r}: {e}") from e
        logger.debug("Recorded step %s/%s in %.2fs", self.task_id, key, time.time() - started)
        return recorded

    def spawn(self, *, child_id: str, request_id: str, topic: str, depth: int) -> TaskHandle:
        try:
            row = self.store.spawn_child_task(
                task_id=child_id,
                parent_id=self.task_id,
                request_id=request_id,
                topic=topic,
                depth=depth,
            )
        except ParentNotActiveError as e:
            if e.status == TaskStatus.CANCELED:
                self.cancel.request_cancel("canceled")
                self.cancel.raise_if_cancelled()
            raise SubstrateFailure(f"Failed to spawn child {child_id}: {e}") from e
        except (sqlite3.Error, KeyError) as e:
            raise SubstrateFailure(f"Failed to spawn child {child_id}: {e}") from e
        self.trace("child_spawned", {"child_id": child_id, "request_id": request_id, "topic": topic, "depth": depth})
        return TaskHandle(
            task_id=str(row["task_id"]),
            request_id=str(row["request_id"]),
            subtopic=str(row["topic"]),
            depth=int(row["depth"]),
        )

    def poll(self, handle: TaskHandle) -> HandleState:
        try:
            row = self.store.get_task(task_id=handle.task_id)
        except sqlite3.Error as e:
            raise SubstrateFailure(f"Failed to poll child {handle.task_id}: {e}") from e
        if row is None:
            raise SubstrateFailure(f"Child task not found: {handle.task_id}")
        return HandleState(status=str(row["status"]), result=row["result"], error=row["error"])

    def save(self, inv: TaskInvocation) -> None:
        try:
            self.store.save_task_state(self.task_id, inv.to_json())
        except sqlite3.Error as e:
            raise SubstrateFailure(f"Failed to persist task state: {e}") from e
