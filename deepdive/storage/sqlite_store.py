from __future__ import annotations

import json
import os
import sqlite3
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

from deepdive.research.state import TaskStatus


SCHEMA_VERSION = 1


_ACTIVE_SQL = "('queued', 'running', 'waiting')"
_TASK_COLUMNS = (
    "task_id, root_id, parent_id, request_id, topic, depth, created_at, started_at, ended_at, "
    "updated_at, status, attempts, state_json, config_json, result, error, error_kind"
)


def _utc_ts() -> float:
    return time.time()


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def new_task_id() -> str:
    return _new_id("task")


def _json_dumps(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def default_db_path() -> str:
    return os.getenv("DEEPDIVE_SQLITE_PATH", "data/deepdive.db")


class ParentNotActiveError(RuntimeError):
    """A child was spawned under a parent that has already reached a terminal status."""

    def __init__(self, parent_id: str, status: str) -> None:
        super().__init__(f"Parent task {parent_id} is {status}; refusing to spawn children")
        self.parent_id = parent_id
        self.status = status


@dataclass(frozen=True)
class TaskRecord:
    task_id: str
    root_id: str
    parent_id: str | None
    request_id: str | None
    topic: str
    depth: int
    created_at: float
    status: str


def task_row_to_dict(r: sqlite3.Row, *, include_state: bool = False) -> dict[str, Any]:
    item: dict[str, Any] = {
        "task_id": r["task_id"],
        "root_id": r["root_id"],
        "parent_id": r["parent_id"],
        "request_id": r["request_id"],
        "topic": r["topic"],
        "depth": int(r["depth"]),
        "created_at": float(r["created_at"]),
        "started_at": float(r["started_at"]) if r["started_at"] is not None else None,
        "ended_at": float(r["ended_at"]) if r["ended_at"] is not None else None,
        "status": r["status"],
        "attempts": int(r["attempts"]),
        "result": r["result"],
        "error": r["error"],
        "error_kind": r["error_kind"],
    }
    if include_state:
        item["state"] = json.loads(r["state_json"]) if r["state_json"] else None
    return item


class SQLiteStore:
    """SQLite-backed durable substrate for research tasks.

    - `tasks` holds one row per invocation (root or child) with its resumable state.
    - `steps` records the result of each durable step, keyed by (task_id, step_key).
    - `events` is the append-only, program-recorded trace.

    Every worker thread opens its own store; cross-thread coordination relies on
    `BEGIN IMMEDIATE` transactions.
    """

    # schema_version -> method that upgrades the database by one version.
    _MIGRATIONS: dict[int, str] = {}

    def __init__(self, db_path: str | Path | None = None, *, timeout_s: float = 30.0) -> None:
        self.db_path = Path(db_path or default_db_path()).expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), timeout=timeout_s)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON;")
        self._conn.execute("PRAGMA journal_mode = WAL;")
        self._conn.execute("PRAGMA synchronous = NORMAL;")

        self._init_schema()

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self, *, mode: str = "IMMEDIATE") -> Iterable[None]:
        """Explicit transaction; IMMEDIATE gives single-writer semantics across workers."""
        self._conn.execute(f"BEGIN {mode};")
        try:
            yield
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def _init_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS meta (
              key TEXT PRIMARY KEY,
              value TEXT NOT NULL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS tasks (
              task_id TEXT PRIMARY KEY,
              root_id TEXT NOT NULL,
              parent_id TEXT,
              request_id TEXT,
              topic TEXT NOT NULL,
              depth INTEGER NOT NULL,
              created_at REAL NOT NULL,
              started_at REAL,
              ended_at REAL,
              updated_at REAL NOT NULL,
              status TEXT NOT NULL,
              attempts INTEGER NOT NULL DEFAULT 0,
              state_json TEXT,
              config_json TEXT NOT NULL DEFAULT '{}',
              result TEXT,
              error TEXT,
              error_kind TEXT,
              FOREIGN KEY (parent_id) REFERENCES tasks(task_id) ON DELETE CASCADE
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS events (
              event_id TEXT PRIMARY KEY,
              task_id TEXT NOT NULL,
              created_at REAL NOT NULL,
              event_type TEXT NOT NULL,
              payload_json TEXT NOT NULL,
              FOREIGN KEY (task_id) REFERENCES tasks(task_id) ON DELETE CASCADE
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS cancel_requests (
              cancel_id TEXT PRIMARY KEY,
              created_at REAL NOT NULL,
              target_type TEXT NOT NULL,
              target_id TEXT NOT NULL,
              status TEXT NOT NULL,
              reason TEXT
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_status_created ON tasks(status, created_at);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_parent ON tasks(parent_id, created_at);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_events_task_ts ON events(task_id, created_at, event_id);")
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_cancel_target ON cancel_requests(target_type, target_id, created_at);"
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS steps (
              task_id TEXT NOT NULL,
              step_key TEXT NOT NULL,
              created_at REAL NOT NULL,
              result_json TEXT NOT NULL,
              PRIMARY KEY (task_id, step_key),
              FOREIGN KEY (task_id) REFERENCES tasks(task_id) ON DELETE CASCADE
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS idempotency_keys (
              key TEXT PRIMARY KEY,
              created_at REAL NOT NULL,
              request_hash TEXT NOT NULL,
              response_json TEXT NOT NULL
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_root ON tasks(root_id, created_at);")

        # Stamp new databases; existing ones keep their version and migrate below.
        cur.execute(
            "INSERT OR IGNORE INTO meta(key, value) VALUES(?, ?);",
            ("schema_version", str(SCHEMA_VERSION)),
        )
        self._conn.commit()

        self._migrate_if_needed()

    def _get_schema_version(self) -> int:
        row = self._conn.execute("SELECT value FROM meta WHERE key = ?;", ("schema_version",)).fetchone()
        if row is None:
            return 0
        try:
            return int(row["value"])
        except ValueError:
            return 0

    def _set_schema_version(self, version: int) -> None:
        self._conn.execute(
            "INSERT INTO meta(key, value) VALUES(?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value;",
            ("schema_version", str(int(version))),
        )

    def _migrate_if_needed(self) -> None:
        current = self._get_schema_version()
        target = int(SCHEMA_VERSION)
        if current == target:
            return
        if current > target:
            raise RuntimeError(f"DB schema_version={current} is newer than code expects ({target}).")

        cur = self._conn.cursor()
        cur.execute("BEGIN IMMEDIATE;")
        try:
            # Re-read under the write lock: another worker may have migrated already.
            current = self._get_schema_version()
            while current < target:
                step = self._MIGRATIONS.get(current)
                if step is None:
                    raise RuntimeError(f"Missing migration step for schema_version={current} -> {current+1}")
                getattr(self, step)(cur)
                current += 1
                self._set_schema_version(current)
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    # --- Idempotency
    def get_idempotency(self, key: str) -> sqlite3.Row | None:
        return self._conn.execute(
            "SELECT key, created_at, request_hash, response_json FROM idempotency_keys WHERE key = ? LIMIT 1;",
            (key,),
        ).fetchone()

    def put_idempotency(
        self, *, key: str, request_hash: str, response_json: str, commit: bool = True
    ) -> None:
        self._conn.execute(
            """
            INSERT INTO idempotency_keys(key, created_at, request_hash, response_json)
            VALUES(?, ?, ?, ?)
            ON CONFLICT(key) DO NOTHING;
            """,
            (key, _utc_ts(), request_hash, response_json),
        )
        if commit:
            self._conn.commit()

    # --- Tasks
    def get_task(self, *, task_id: str) -> sqlite3.Row | None:
        return self._conn.execute(
            f"SELECT {_TASK_COLUMNS} FROM tasks WHERE task_id = ? LIMIT 1;",
            (task_id,),
        ).fetchone()

    def list_children(self, *, task_id: str) -> list[sqlite3.Row]:
        return self._conn.execute(
            f"SELECT {_TASK_COLUMNS} FROM tasks WHERE parent_id = ? ORDER BY created_at, rowid;",
            (task_id,),
        ).fetchall()

    def list_tasks_page(
        self,
        *,
        limit: int,
        cursor: tuple[float, str] | None,
        statuses: list[str] | None,
        roots_only: bool = True,
    ) -> dict[str, Any]:
        where = ["1=1"]
        params: list[Any] = []

        if roots_only:
            where.append("parent_id IS NULL")

        if statuses:
            where.append("status IN (%s)" % ",".join(["?"] * len(statuses)))
            params.extend(statuses)

        if cursor is not None:
            created_at, task_id = cursor
            # Newest-first pagination (DESC).
            where.append("(created_at < ? OR (created_at = ? AND task_id < ?))")
            params.extend([float(created_at), float(created_at), str(task_id)])

        where_sql = " AND ".join(where)
        fetch_n = int(limit) + 1

        rows = self._conn.execute(
            f"""
            SELECT {_TASK_COLUMNS}
            FROM tasks
            WHERE {where_sql}
            ORDER BY created_at DESC, task_id DESC
            LIMIT ?;
            """,
            (*params, fetch_n),
        ).fetchall()

        has_more = len(rows) > limit
        if has_more:
            rows = rows[:limit]

        items = [task_row_to_dict(r) for r in rows]

        next_cursor: tuple[float, str] | None = None
        if has_more and items:
            last = items[-1]
            next_cursor = (float(last["created_at"]), str(last["task_id"]))

        return {"items": items, "has_more": has_more, "next_cursor": next_cursor}

    def count_tasks_by_status(self) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT status, COUNT(*) AS n FROM tasks GROUP BY status ORDER BY status;",
        ).fetchall()
        return {str(r["status"]): int(r["n"]) for r in rows}

    def create_root_task(
        self,
        *,
        task_id: str,
        topic: str,
        depth: int,
        state_json: str | None,
        config: dict[str, Any] | None = None,
        commit: bool = True,
    ) -> TaskRecord:
        created_at = _utc_ts()
        self._conn.execute(
            """
            INSERT INTO tasks(
              task_id, root_id, parent_id, request_id, topic, depth, created_at, updated_at,
              status, state_json, config_json
            ) VALUES(?, ?, NULL, NULL, ?, ?, ?, ?, 'queued', ?, ?);
            """,
            (task_id, task_id, topic, int(depth), created_at, created_at, state_json, _json_dumps(config or {})),
        )
        self._insert_event(task_id, "task_created", {"topic": topic, "depth": int(depth)}, ts=created_at)
        if commit:
            self._conn.commit()
        return TaskRecord(
            task_id=task_id,
            root_id=task_id,
            parent_id=None,
            request_id=None,
            topic=topic,
            depth=int(depth),
            created_at=created_at,
            status="queued",
        )

    def spawn_child_task(
        self,
        *,
        task_id: str,
        parent_id: str,
        request_id: str,
        topic: str,
        depth: int,
    ) -> sqlite3.Row:
        """Create a queued child task, or return the existing one (replay-safe).

        Raises ParentNotActiveError once the parent is canceled, failed or completed, so a
        cancel that lands mid fan-out never leaves queued orphans behind.
        """
        with self.transaction(mode="IMMEDIATE"):
            parent = self.get_task(task_id=parent_id)
            if parent is None:
                raise KeyError(f"Parent task not found: {parent_id}")
            if str(parent["status"]) not in TaskStatus.ACTIVE:
                raise ParentNotActiveError(parent_id, str(parent["status"]))
            ts = _utc_ts()
            inserted = self._conn.execute(
                """
                INSERT INTO tasks(
                  task_id, root_id, parent_id, request_id, topic, depth, created_at, updated_at,
                  status, state_json, config_json
                ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, 'queued', NULL, ?)
                ON CONFLICT(task_id) DO NOTHING;
                """,
                (
                    task_id,
                    parent["root_id"],
                    parent_id,
                    request_id,
                    topic,
                    int(depth),
                    ts,
                    ts,
                    parent["config_json"],
                ),
            )
            if inserted.rowcount == 1:
                self._insert_event(
                    task_id,
                    "task_created",
                    {"topic": topic, "depth": int(depth), "parent_id": parent_id, "request_id": request_id},
                    ts=ts,
                )
            row = self.get_task(task_id=task_id)
        assert row is not None
        return row

    def save_task_state(self, task_id: str, state_json: str) -> None:
        self._conn.execute(
            "UPDATE tasks SET state_json = ?, updated_at = ? WHERE task_id = ?;",
            (state_json, _utc_ts(), task_id),
        )
        self._conn.commit()

    def claim_next_queued_task(self) -> sqlite3.Row | None:
        """Atomically claim the oldest queued task and mark it as running."""
        with self.transaction(mode="IMMEDIATE"):
            row = self._conn.execute(
                """
                SELECT task_id
                FROM tasks
                WHERE status = 'queued'
                ORDER BY created_at ASC, rowid ASC
                LIMIT 1;
                """
            ).fetchone()
            if row is None:
                return None

            ts = _utc_ts()
            task_id = str(row["task_id"])
            updated = self._conn.execute(
                """
                UPDATE tasks
                SET
                  status = 'running',
                  attempts = attempts + 1,
                  started_at = COALESCE(started_at, ?),
                  updated_at = ?
                WHERE task_id = ? AND status = 'queued';
                """,
                (ts, ts, task_id),
            )
            if updated.rowcount != 1:
                return None
            return self.get_task(task_id=task_id)

    def complete_task(self, task_id: str, result: str) -> bool:
        """Record a task's answer. Returns False if the task was no longer running."""
        with self.transaction(mode="IMMEDIATE"):
            ts = _utc_ts()
            updated = self._conn.execute(
                """
                UPDATE tasks
                SET status = 'completed', result = ?, ended_at = COALESCE(ended_at, ?), updated_at = ?
                WHERE task_id = ? AND status = 'running';
                """,
                (result, ts, ts, task_id),
            )
            if updated.rowcount != 1:
                return False
            self._insert_event(task_id, "task_completed", {"result_chars": len(result)}, ts=ts)
            self._wake_parent_if_ready(task_id)
            return True

    def fail_task(
        self, task_id: str, *, error: str, error_kind: str, details: dict[str, Any] | None = None
    ) -> bool:
        with self.transaction(mode="IMMEDIATE"):
            ts = _utc_ts()
            updated = self._conn.execute(
                f"""
                UPDATE tasks
                SET status = 'failed', error = ?, error_kind = ?, ended_at = COALESCE(ended_at, ?), updated_at = ?
                WHERE task_id = ? AND status IN {_ACTIVE_SQL};
                """,
                (error, error_kind, ts, ts, task_id),
            )
            if updated.rowcount != 1:
                return False
            self._insert_event(
                task_id, "task_failed", {"error": error, "error_kind": error_kind, **(details or {})}, ts=ts
            )
            self._wake_parent_if_ready(task_id)
            return True

    def suspend_task(self, task_id: str) -> str:
        """Park a running task until its children are ready.

        If the wake condition already holds (children finished while the task was
        still running) the task is re-queued instead. Returns the new status.
        """
        with self.transaction(mode="IMMEDIATE"):
            ready = self._children_ready(task_id)
            status = "queued" if ready else "waiting"
            ts = _utc_ts()
            updated = self._conn.execute(
                "UPDATE tasks SET status = ?, updated_at = ? WHERE task_id = ? AND status = 'running';",
                (status, ts, task_id),
            )
            if updated.rowcount != 1:
                row = self.get_task(task_id=task_id)
                return str(row["status"]) if row is not None else "missing"
            self._insert_event(task_id, "task_suspended", {"requeued": ready}, ts=ts)
            return status

    def _children_ready(self, task_id: str) -> bool:
        row = self._conn.execute(
            f"""
            SELECT
              COALESCE(SUM(CASE WHEN status IN ('failed', 'canceled') THEN 1 ELSE 0 END), 0) AS bad,
              COALESCE(SUM(CASE WHEN status IN {_ACTIVE_SQL} THEN 1 ELSE 0 END), 0) AS active
            FROM tasks
            WHERE parent_id = ?;
            """,
            (task_id,),
        ).fetchone()
        return int(row["bad"]) > 0 or int(row["active"]) == 0

    def _wake_parent_if_ready(self, task_id: str) -> None:
        """Re-queue the waiting parent of `task_id` when its children are ready (no commit)."""
        row = self._conn.execute("SELECT parent_id FROM tasks WHERE task_id = ?;", (task_id,)).fetchone()
        if row is None or row["parent_id"] is None:
            return
        parent_id = str(row["parent_id"])
        if not self._children_ready(parent_id):
            return
        ts = _utc_ts()
        woke = self._conn.execute(
            "UPDATE tasks SET status = 'queued', updated_at = ? WHERE task_id = ? AND status = 'waiting';",
            (ts, parent_id),
        )
        if woke.rowcount == 1:
            self._insert_event(parent_id, "task_woken", {"by": task_id}, ts=ts)

    def cancel_task_tree(self, task_id: str, *, reason: str) -> int:
        """Cancel `task_id` and every still-active descendant.

        The parent of `task_id` (if waiting) is woken so it observes the cancellation.
        Returns the number of tasks cancelled.
        """
        with self.transaction(mode="IMMEDIATE"):
            rows = self._conn.execute(
                f"""
                WITH RECURSIVE subtree(task_id) AS (
                  SELECT task_id FROM tasks WHERE task_id = ?
                  UNION ALL
                  SELECT t.task_id FROM tasks t JOIN subtree s ON t.parent_id = s.task_id
                )
                SELECT task_id FROM tasks
                WHERE task_id IN (SELECT task_id FROM subtree) AND status IN {_ACTIVE_SQL};
                """,
                (task_id,),
            ).fetchall()
            ts = _utc_ts()
            for r in rows:
                tid = str(r["task_id"])
                self._conn.execute(
                    f"""
                    UPDATE tasks
                    SET
                      status = 'canceled',
                      error = COALESCE(error, ?),
                      error_kind = COALESCE(error_kind, 'canceled'),
                      ended_at = COALESCE(ended_at, ?),
                      updated_at = ?
                    WHERE task_id = ? AND status IN {_ACTIVE_SQL};
                    """,
                    (reason, ts, ts, tid),
                )
                self._insert_event(tid, "task_canceled", {"reason": reason}, ts=ts)
            if rows:
                self._wake_parent_if_ready(task_id)
            return len(rows)

    def reconcile_running_tasks(self, *, reason: str = "server_restarted") -> int:
        """Re-queue tasks left 'running' by a previous process.

        Recorded steps and idempotent spawns make re-execution safe, so interrupted
        tasks resume from their last saved phase instead of failing.
        """
        ts = _utc_ts()
        rows = self._conn.execute("SELECT task_id FROM tasks WHERE status = 'running';").fetchall()
        if not rows:
            return 0
        for r in rows:
            task_id = str(r["task_id"])
            self._conn.execute(
                "UPDATE tasks SET status = 'queued', updated_at = ? WHERE task_id = ? AND status = 'running';",
                (ts, task_id),
            )
            self._insert_event(task_id, "task_resumed", {"reason": reason}, ts=ts)
        self._conn.commit()
        return len(rows)

    # --- Durable steps
    def get_step(self, *, task_id: str, step_key: str) -> sqlite3.Row | None:
        return self._conn.execute(
            "SELECT task_id, step_key, created_at, result_json FROM steps WHERE task_id = ? AND step_key = ? LIMIT 1;",
            (task_id, step_key),
        ).fetchone()

    def record_step(self, *, task_id: str, step_key: str, result: Any) -> Any:
        """Record a step result; the first recorded value wins and is returned."""
        self._conn.execute(
            """
            INSERT INTO steps(task_id, step_key, created_at, result_json)
            VALUES(?, ?, ?, ?)
            ON CONFLICT(task_id, step_key) DO NOTHING;
            """,
            (task_id, step_key, _utc_ts(), _json_dumps(result)),
        )
        self._conn.commit()
        row = self.get_step(task_id=task_id, step_key=step_key)
        assert row is not None
        return self.decode_step(row)

    @staticmethod
    def decode_step(row: sqlite3.Row) -> Any:
        return json.loads(row["result_json"])

    # --- Events (trace)
    def _insert_event(self, task_id: str, event_type: str, payload: dict[str, Any], *, ts: float | None = None) -> str:
        event_id = _new_id("evt")
        self._conn.execute(
            """
            INSERT INTO events(event_id, task_id, created_at, event_type, payload_json)
            VALUES(?, ?, ?, ?, ?);
            """,
            (event_id, task_id, ts if ts is not None else _utc_ts(), event_type, _json_dumps(payload)),
        )
        return event_id

    def append_event(self, task_id: str, event_type: str, payload: dict[str, Any]) -> str:
        event_id = self._insert_event(task_id, event_type, payload)
        self._conn.commit()
        return event_id

    def iter_events(self, task_id: str) -> Iterable[dict[str, Any]]:
        rows = self._conn.execute(
            "SELECT created_at, event_type, payload_json FROM events WHERE task_id = ? ORDER BY created_at, rowid;",
            (task_id,),
        )
        for r in rows:
            yield {
                "created_at": float(r["created_at"]),
                "event_type": r["event_type"],
                "payload": json.loads(r["payload_json"]),
            }

    def get_latest_event(self, *, task_id: str, event_type: str) -> sqlite3.Row | None:
        return self._conn.execute(
            """
            SELECT event_id, task_id, created_at, event_type, payload_json
            FROM events
            WHERE task_id = ? AND event_type = ?
            ORDER BY created_at DESC, rowid DESC
            LIMIT 1;
            """,
            (task_id, event_type),
        ).fetchone()

    def list_events_page(
        self,
        *,
        task_id: str,
        limit: int,
        cursor: tuple[float, str] | None,
        event_types: list[str] | None,
        include_payload: bool,
    ) -> dict[str, Any]:
        # Cursor-based pagination, stable ordering by (created_at, event_id).
        where = ["task_id = ?"]
        params: list[Any] = [task_id]

        if event_types:
            where.append("event_type IN (%s)" % ",".join(["?"] * len(event_types)))
            params.extend(event_types)

        if cursor is not None:
            created_at, event_id = cursor
            # Strictly after the cursor to avoid duplicates.
            where.append("(created_at > ? OR (created_at = ? AND event_id > ?))")
            params.extend([float(created_at), float(created_at), str(event_id)])

        where_sql = " AND ".join(where)
        fetch_n = int(limit) + 1

        rows = self._conn.execute(
            f"""
            SELECT event_id, task_id, created_at, event_type, payload_json
            FROM events
            WHERE {where_sql}
            ORDER BY created_at ASC, event_id ASC
            LIMIT ?;
            """,
            (*params, fetch_n),
        ).fetchall()

        has_more = len(rows) > limit
        if has_more:
            rows = rows[:limit]

        items: list[dict[str, Any]] = []
        for r in rows:
            item: dict[str, Any] = {
                "event_id": r["event_id"],
                "task_id": r["task_id"],
                "created_at": float(r["created_at"]),
                "event_type": r["event_type"],
            }
            if include_payload:
                item["payload"] = json.loads(r["payload_json"])
            items.append(item)

        next_cursor: tuple[float, str] | None = None
        if has_more and items:
            last = items[-1]
            next_cursor = (float(last["created_at"]), str(last["event_id"]))

        return {"items": items, "has_more": has_more, "next_cursor": next_cursor}

    # --- Cancellation (program-recorded; used by API/CLI to stop task trees)
    def request_cancel(self, *, target_id: str, reason: str | None = None, target_type: str = "task") -> str:
        if target_type != "task":
            raise ValueError(f"Invalid target_type: {target_type!r}")

        cancel_id = _new_id("cancel")
        self._conn.execute(
            """
            INSERT INTO cancel_requests(
              cancel_id, created_at, target_type, target_id, status, reason
            ) VALUES(?, ?, ?, ?, ?, ?);
            """,
            (cancel_id, _utc_ts(), target_type, target_id, "requested", reason),
        )
        self._conn.commit()
        return cancel_id

    def is_cancel_requested(self, *, target_id: str, target_type: str = "task") -> bool:
        row = self._conn.execute(
            """
            SELECT 1 FROM cancel_requests
            WHERE target_type = ? AND target_id = ? AND status IN ('requested', 'acknowledged')
            LIMIT 1;
            """,
            (target_type, target_id),
        ).fetchone()
        return row is not None

    def acknowledge_cancel(self, *, target_id: str, target_type: str = "task") -> None:
        self._conn.execute(
            """
            UPDATE cancel_requests
            SET status = 'acknowledged'
            WHERE target_type = ? AND target_id = ? AND status = 'requested';
            """,
            (target_type, target_id),
        )
        self._conn.commit()
