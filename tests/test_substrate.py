from __future__ import annotations

import tempfile

import pytest

from deepdive.research.state import TaskStatus
from deepdive.runtime.substrate import DurableTaskContext
from deepdive.storage.sqlite_store import SQLiteStore
from deepdive.utils.cancel import CancelledError


def _store_with_root(td: str) -> SQLiteStore:
    store = SQLiteStore(f"{td}/app.db")
    store.create_root_task(task_id="root", topic="T", depth=1, state_json=None)
    return store


def test_durable_step_runs_once_and_replays() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = _store_with_root(td)
        try:
            ctx = DurableTaskContext(store, task_id="root")
            calls: list[int] = []

            def _fn() -> dict:
                calls.append(1)
                return {"role": "assistant", "content": f"call {len(calls)}"}

            first = ctx.durable_step("consult:0", _fn)
            second = DurableTaskContext(store, task_id="root").durable_step("consult:0", _fn)
            assert first == second == {"role": "assistant", "content": "call 1"}
            assert len(calls) == 1
        finally:
            store.close()


def test_spawn_and_poll_child() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = _store_with_root(td)
        try:
            ctx = DurableTaskContext(store, task_id="root")
            handle = ctx.spawn(child_id="root.0.0", request_id="c1", topic="S1", depth=0)
            again = ctx.spawn(child_id="root.0.0", request_id="c1", topic="S1", depth=0)
            assert handle == again

            state = ctx.poll(handle)
            assert state.status == TaskStatus.QUEUED
            assert state.resolved is False
        finally:
            store.close()


def test_check_cancelled_observes_cancel_request() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = _store_with_root(td)
        try:
            ctx = DurableTaskContext(store, task_id="root")
            ctx.check_cancelled()

            store.request_cancel(target_id="root", reason="stop")
            with pytest.raises(CancelledError):
                ctx.check_cancelled()
            assert ctx.cancel.cancelled is True
        finally:
            store.close()


def test_check_cancelled_observes_cancelled_status() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = _store_with_root(td)
        try:
            store.cancel_task_tree("root", reason="ancestor_failed:x")
            with pytest.raises(CancelledError) as e:
                DurableTaskContext(store, task_id="root").check_cancelled()
            assert "ancestor_failed" in str(e.value)
        finally:
            store.close()


def test_spawn_after_parent_canceled_raises_cancelled_and_queues_nothing() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = _store_with_root(td)
        try:
            ctx = DurableTaskContext(store, task_id="root")
            store.cancel_task_tree("root", reason="stop")

            with pytest.raises(CancelledError):
                ctx.spawn(child_id="root.0.0", request_id="c1", topic="S1", depth=0)
            assert store.get_task(task_id="root.0.0") is None
        finally:
            store.close()
