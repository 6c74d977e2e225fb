from __future__ import annotations

import importlib.metadata
import time
from typing import Any

from fastapi import APIRouter, Request

from deepdive import __version__
from deepdive.research.state import TaskStatus
from deepdive.storage.sqlite_store import SCHEMA_VERSION, SQLiteStore


router = APIRouter()

_REPORTED_DEPS = ("fastapi", "pydantic", "uvicorn", "openai")


def _installed_versions() -> dict[str, str | None]:
    versions: dict[str, str | None] = {}
    for name in _REPORTED_DEPS:
        try:
            versions[name] = importlib.metadata.version(name)
        except importlib.metadata.PackageNotFoundError:
            versions[name] = None
    return versions


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/version")
def version() -> dict[str, Any]:
    return {
        "service": "deepdive",
        "version": __version__,
        "api": "v1",
        "schema_version": int(SCHEMA_VERSION),
        "deps": _installed_versions(),
    }


@router.get("/system/worker")
def system_worker(request: Request) -> dict[str, Any]:
    """Worker pool state plus a task-queue summary (parked parents count as `waiting`)."""
    state = request.app.state
    worker = getattr(state, "run_worker", None)
    pool: dict[str, Any] = {"enabled": worker is not None, "running": False}
    if worker is not None:
        pool.update(worker.status_snapshot())

    store = SQLiteStore()
    try:
        by_status = store.count_tasks_by_status()
    finally:
        store.close()

    return {
        "ts": time.time(),
        "worker": pool,
        "oracle_configured": bool(getattr(state, "oracle_configured", False)),
        "tasks": {
            "by_status": by_status,
            "active": sum(n for s, n in by_status.items() if s in TaskStatus.ACTIVE),
        },
        "resumed_on_startup": int(getattr(state, "resumed_running_tasks", 0)),
    }
