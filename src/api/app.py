from __future__ import annotations

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError

from src.api.errors import (
    APIError,
    api_error_handler,
    job_not_found_handler,
    unhandled_error_handler,
    validation_error_handler,
)
from src.config.load_config import load_app_config
from src.runtime.handlers import HandlerRegistry
from src.runtime.worker import JobWorker
from src.storage.sqlite_store import JobNotFoundError, SQLiteStore

from .routers.health import router as health_router
from .routers.jobs import router as jobs_router
from .routers.runner import router as runner_router


def _cors_origins_from_env() -> list[str]:
    raw = os.getenv("JOBRUNNER_CORS_ORIGINS", "").strip()
    if not raw:
        return [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ]
    return [o.strip() for o in raw.split(",") if o.strip()]


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


def create_app(*, registry: HandlerRegistry | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: ANN202
        cfg = load_app_config()
        app.state.app_config = cfg

        # The runner's own connection; it lives on the event loop thread.
        store = SQLiteStore(check_same_thread=False)
        app.state.reconciled_running_jobs = 0
        if _env_bool("JOBRUNNER_RECONCILE_ON_STARTUP", True):
            # Jobs left 'running' by a previous process.
            app.state.reconciled_running_jobs = int(
                store.reconcile_running_jobs(max_retries=cfg.jobs.max_retries)
            )

        # Single runner per process (single-instance assumption).
        if _env_bool("JOBRUNNER_ENABLE_RUNNER", True):
            worker = JobWorker.from_config(cfg, store=store, registry=registry)
            worker.start()
            app.state.job_worker = worker
        try:
            yield
        finally:
            worker = getattr(app.state, "job_worker", None)
            if worker is not None:
                await worker.stop()
            store.close()

    app = FastAPI(title="Single-slot Job Runner API", version="0.1.0", lifespan=lifespan)

    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(JobNotFoundError, job_not_found_handler)
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
    app.include_router(jobs_router, prefix="/api/v1", tags=["jobs"])
    app.include_router(runner_router, prefix="/api/v1", tags=["runner"])

    return app


app = create_app()
