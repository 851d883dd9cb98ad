from __future__ import annotations

from fastapi import Request

from src.api.errors import APIError
from src.config.load_config import AppConfig, ConfigError, load_app_config
from src.runtime.worker import JobWorker


def get_app_config(request: Request) -> AppConfig:
    """FastAPI dependency: config loaded once in lifespan, cached on `app.state`."""
    cached = getattr(request.app.state, "app_config", None)
    if isinstance(cached, AppConfig):
        return cached
    try:
        cfg = load_app_config()
    except ConfigError as e:
        raise APIError(status_code=500, code="internal", message=str(e)) from e
    request.app.state.app_config = cfg
    return cfg


def get_optional_worker(request: Request) -> JobWorker | None:
    worker = getattr(request.app.state, "job_worker", None)
    return worker if isinstance(worker, JobWorker) else None


def get_worker(request: Request) -> JobWorker:
    """FastAPI dependency: the single background runner (503 when disabled)."""
    worker = get_optional_worker(request)
    if worker is None:
        raise APIError(
            status_code=503,
            code="runner_disabled",
            message="Job runner is not enabled in this process.",
        )
    return worker
