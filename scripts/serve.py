#!/usr/bin/env python3
from __future__ import annotations

import os
import sys
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))


def main() -> int:
    host = os.getenv("DEEPDIVE_HOST", "127.0.0.1")
    port = int(os.getenv("DEEPDIVE_PORT", "8000"))
    reload = os.getenv("DEEPDIVE_RELOAD", "0").strip().lower() in {"1", "true", "yes", "y", "on"}

    import uvicorn

    uvicorn.run(
        "deepdive.api.app:app",
        host=host,
        port=port,
        reload=reload,
        log_level=os.getenv("DEEPDIVE_LOG_LEVEL", "info"),
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
