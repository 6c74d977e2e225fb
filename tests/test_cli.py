from __future__ import annotations

import os
import tempfile

import pytest

from deepdive.cli import cancel, research
from deepdive.storage.sqlite_store import SQLiteStore


def test_research_cli_dry_run_prints_answer(capsys: pytest.CaptureFixture[str]) -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = os.path.join(td, "app.db")
        code = research.main(["--topic", "T", "--depth", "1", "--dry-run", "--db-path", db_path, "--timeout-s", "30"])
        assert code == 0
        out = capsys.readouterr().out
        assert out.startswith("Synthesis for T:")


def test_research_cli_rejects_negative_depth(capsys: pytest.CaptureFixture[str]) -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = os.path.join(td, "app.db")
        assert research.main(["--topic", "T", "--depth", "-1", "--dry-run", "--db-path", db_path]) == 1
        assert "invalid_input" in capsys.readouterr().err


def test_cancel_cli_cancels_task(capsys: pytest.CaptureFixture[str]) -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = os.path.join(td, "app.db")
        store = SQLiteStore(db_path)
        try:
            store.create_root_task(task_id="root", topic="T", depth=1, state_json=None)
        finally:
            store.close()

        assert cancel.main(["--task-id", "root", "--db-path", db_path]) == 0
        assert "canceled=1" in capsys.readouterr().out
        assert cancel.main(["--task-id", "missing", "--db-path", db_path]) == 1
