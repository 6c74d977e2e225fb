from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from deepdive import __version__
from deepdive.agents.orchestrator import build_engine
from deepdive.api.errors import (
    APIError,
    api_error_handler,
    research_error_handler,
    unhandled_error_handler,
    validation_error_handler,
)
from deepdive.config.load_config import load_app_config
from deepdive.llm.openai_compat import LLMConfigError
from deepdive.research.errors import ResearchError
from deepdive.runtime.worker import RunWorker
from deepdive.storage.sqlite_store import SQLiteStore

from .routers.health import router as health_router
from .routers.tasks import router as tasks_router


logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in {"1", "true", "yes", "y", "on"}:
        return True
    if v in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _cors_origins_from_env() -> list[str]:
    raw = os.getenv("DEEPDIVE_CORS_ORIGINS", "").strip()
    if not raw:
        return [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ]
    return [o.strip() for o in raw.split(",") if o.strip()]


def create_app() -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: ANN202
        # Tasks interrupted by a previous process resume from their last saved phase.
        if _env_bool("DEEPDIVE_RECONCILE_ON_STARTUP", True):
            store = SQLiteStore()
            try:
                app.state.resumed_running_tasks = int(store.reconcile_running_tasks())
            finally:
                store.close()
        else:
            app.state.resumed_running_tasks = 0

        app.state.oracle_configured = False
        if _env_bool("DEEPDIVE_ENABLE_WORKER", True):
            cfg = load_app_config()
            engine = None
            try:
                engine = build_engine(cfg)
                app.state.oracle_configured = True
            except LLMConfigError as e:
                logger.warning("Oracle unavailable, only dry-run tasks will execute: %s", e)
            worker = RunWorker(
                engine=engine,
                dry_run_engine=build_engine(cfg, dry_run=True),
                config=cfg.worker,
            )
            worker.start()
            app.state.run_worker = worker
        try:
            yield
        finally:
            worker = getattr(app.state, "run_worker", None)
            if worker is not None:
                worker.stop()

    app = FastAPI(title="deepdive API", version=__version__, lifespan=lifespan)

    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(ResearchError, research_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins_from_env(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router, prefix="/api/v1", tags=["system"])
    app.include_router(tasks_router, prefix="/api/v1", tags=["tasks"])

    return app


app = create_app()
