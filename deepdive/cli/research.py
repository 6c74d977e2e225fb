from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import replace

from deepdive.agents.orchestrator import OrchestratorAgent
from deepdive.config.load_config import load_app_config
from deepdive.llm.openai_compat import LLMConfigError
from deepdive.research.errors import ResearchError
from deepdive.utils.cancel import CancelledError


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Research a topic by recursive decomposition.")
    parser.add_argument("--topic", required=True, help="Topic to research.")
    parser.add_argument(
        "--depth",
        type=int,
        default=2,
        help="Recursion budget; 0 answers directly without decomposition.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Do not call the LLM. Uses a deterministic offline oracle for pipeline testing.",
    )
    parser.add_argument(
        "--db-path",
        default="",
        help="SQLite path (default: env DEEPDIVE_SQLITE_PATH or data/deepdive.db).",
    )
    parser.add_argument("--concurrency", type=int, default=0, help="Override worker thread count.")
    parser.add_argument("--timeout-s", type=float, default=0.0, help="Give up (and cancel) after N seconds.")
    parser.add_argument("--log-level", default="WARNING", help="Python logging level.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv if argv is not None else sys.argv[1:])
    logging.basicConfig(
        level=str(args.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app_config = load_app_config()
    if int(args.concurrency) > 0:
        app_config = replace(app_config, worker=replace(app_config.worker, concurrency=int(args.concurrency)))

    try:
        agent = OrchestratorAgent.from_config(app_config, db_path=args.db_path or None, dry_run=bool(args.dry_run))
    except LLMConfigError as e:
        print(f"Initialization failed: {e}", file=sys.stderr)
        return 1

    try:
        task_id = agent.submit(args.topic, int(args.depth))
        print(f"task_id={task_id}", file=sys.stderr)
        result = agent.wait(task_id, timeout_s=float(args.timeout_s) or None)
    except CancelledError as e:
        print(f"Canceled: {e}", file=sys.stderr)
        return 1
    except ResearchError as e:
        print(f"Failed ({e.kind}): {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("Interrupted; the task resumes on the next worker start.", file=sys.stderr)
        return 130

    print(result)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
