from __future__ import annotations

import argparse
import sys

from deepdive.storage.sqlite_store import SQLiteStore


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Cancel a queued/running research task and its subtree.")
    p.add_argument("--task-id", required=True, help="Task id to cancel (e.g. task_<uuid>).")
    p.add_argument("--db-path", default="", help="SQLite path (default: env DEEPDIVE_SQLITE_PATH or data/deepdive.db).")
    p.add_argument("--reason", default="user_cancel", help="Optional reason to record.")
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv if argv is not None else sys.argv[1:])
    store = SQLiteStore(args.db_path or None)
    try:
        if store.get_task(task_id=str(args.task_id)) is None:
            print(f"Task not found: {args.task_id}", file=sys.stderr)
            return 1
        cancel_id = store.request_cancel(target_id=str(args.task_id), reason=str(args.reason))
        n = store.cancel_task_tree(str(args.task_id), reason=str(args.reason))
        print(f"{cancel_id} canceled={n}")
        return 0
    finally:
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())
