from __future__ import annotations

import hashlib
import json
import os
from typing import Any

from fastapi import APIRouter, Header, Query
from pydantic import BaseModel, Field

from deepdive.api.errors import APIError
from deepdive.api.pagination import CursorError, encode_next_cursor, parse_cursor_param
from deepdive.config.load_config import load_app_config
from deepdive.research.engine import validate_request
from deepdive.research.state import TaskStatus
from deepdive.storage.sqlite_store import SQLiteStore, new_task_id, task_row_to_dict


router = APIRouter()


class CreateTaskRequest(BaseModel):
    topic: str = Field(min_length=1, description="Topic to research.")
    depth: int = Field(default=2, ge=0, description="Recursion budget; 0 answers directly.")
    dry_run: bool = Field(default=False, description="Use the offline deterministic oracle.")


class CancelTaskRequest(BaseModel):
    reason: str = Field(default="")


def _cursor_or_400(cursor: str | None, *, kind: str) -> tuple[float, str] | None:
    try:
        return parse_cursor_param(cursor, kind=kind)
    except CursorError as e:
        raise APIError.invalid_argument(str(e)) from e


def _require_task(store: SQLiteStore, task_id: str) -> Any:
    row = store.get_task(task_id=task_id)
    if row is None:
        raise APIError.not_found("Task", task_id=task_id)
    return row


@router.post("/tasks")
def create_task(
    body: CreateTaskRequest,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> dict[str, Any]:
    cfg = load_app_config()
    # InvalidInput is mapped to 400 by the research error handler.
    topic, depth = validate_request(body.topic, body.depth, max_topic_chars=cfg.limits.max_topic_chars)
    if depth > cfg.limits.max_depth:
        raise APIError.invalid_argument(f"depth must be in [0..{cfg.limits.max_depth}].", depth=depth)

    if not body.dry_run and not os.getenv("OPENAI_API_KEY", "").strip():
        # Fail at request time rather than queueing a task that cannot consult the oracle.
        raise APIError(
            status_code=503,
            code="dependency_unavailable",
            message="Missing required runtime configuration for normal tasks.",
            details={"missing": ["OPENAI_API_KEY"]},
        )

    # Idempotency: hash the raw request body.
    req_json = json.dumps(body.model_dump(mode="json"), ensure_ascii=False, sort_keys=True, separators=(",", ":"))
    request_hash = hashlib.sha256(req_json.encode("utf-8")).hexdigest()

    store = SQLiteStore()
    try:
        with store.transaction(mode="IMMEDIATE"):
            if idempotency_key:
                existing = store.get_idempotency(str(idempotency_key))
                if existing is not None:
                    if str(existing["request_hash"]) != request_hash:
                        raise APIError(
                            status_code=409,
                            code="conflict",
                            message="Idempotency-Key was already used with a different request body.",
                        )
                    return json.loads(str(existing["response_json"]))

            # The worker builds the initial conversation on first execution.
            task = store.create_root_task(
                task_id=new_task_id(),
                topic=topic,
                depth=depth,
                state_json=None,
                config={"dry_run": bool(body.dry_run)},
                commit=False,
            )
            response: dict[str, Any] = {
                "task": {
                    "task_id": task.task_id,
                    "root_id": task.root_id,
                    "topic": task.topic,
                    "depth": task.depth,
                    "created_at": task.created_at,
                    "status": task.status,
                    "dry_run": bool(body.dry_run),
                }
            }

            if idempotency_key:
                store.put_idempotency(
                    key=str(idempotency_key),
                    request_hash=request_hash,
                    response_json=json.dumps(response, ensure_ascii=False, separators=(",", ":")),
                    commit=False,
                )
            return response
    finally:
        store.close()


@router.get("/tasks")
def list_tasks(
    limit: int = Query(default=50, ge=1, le=200),
    cursor: str | None = Query(default=None),
    status: list[str] | None = Query(default=None),
    roots_only: bool = Query(default=True),
) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        page = store.list_tasks_page(
            limit=int(limit),
            cursor=_cursor_or_400(cursor, kind="tasks"),
            statuses=status or None,
            roots_only=roots_only,
        )
        return encode_next_cursor(page, kind="tasks")
    finally:
        store.close()


@router.get("/tasks/{task_id}")
def get_task(task_id: str, include_state: bool = Query(default=False)) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        row = _require_task(store, task_id)
        return {"task": task_row_to_dict(row, include_state=include_state)}
    finally:
        store.close()


@router.get("/tasks/{task_id}/children")
def list_task_children(task_id: str) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        _require_task(store, task_id)
        return {"items": [task_row_to_dict(r) for r in store.list_children(task_id=task_id)]}
    finally:
        store.close()


@router.get("/tasks/{task_id}/output")
def get_task_output(task_id: str) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        row = _require_task(store, task_id)
        if str(row["status"]) != TaskStatus.COMPLETED:
            raise APIError.not_found(
                "Task output", status=row["status"], error=row["error"], error_kind=row["error_kind"]
            )
        return {"task_id": task_id, "topic": row["topic"], "depth": int(row["depth"]), "result": row["result"]}
    finally:
        store.close()


@router.get("/tasks/{task_id}/events")
def list_task_events(
    task_id: str,
    limit: int = Query(default=100, ge=1, le=500),
    cursor: str | None = Query(default=None),
    event_type: list[str] | None = Query(default=None),
    include_payload: bool = Query(default=False),
) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        _require_task(store, task_id)
        page = store.list_events_page(
            task_id=task_id,
            limit=int(limit),
            cursor=_cursor_or_400(cursor, kind="events"),
            event_types=event_type or None,
            include_payload=include_payload,
        )
        return encode_next_cursor(page, kind="events")
    finally:
        store.close()


@router.post("/tasks/{task_id}/cancel")
def cancel_task(task_id: str, body: CancelTaskRequest | None = None) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        _require_task(store, task_id)
        reason = (body.reason if body is not None else "").strip() or "cancel_requested"
        cancel_id = store.request_cancel(target_id=task_id, reason=reason)
        n_canceled = store.cancel_task_tree(task_id, reason=reason)
        return {"cancel_id": cancel_id, "status": "requested", "n_canceled": n_canceled}
    finally:
        store.close()
