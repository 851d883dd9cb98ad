from __future__ import annotations

import importlib.metadata
import time
from typing import Any

from fastapi import APIRouter
from fastapi import Request

from src.api.dependencies import get_optional_worker
from src.storage.sqlite_store import SCHEMA_VERSION
from src.storage.sqlite_store import SQLiteStore


router = APIRouter()


def _pkg_version(name: str) -> str | None:
    try:
        return str(importlib.metadata.version(name))
    except importlib.metadata.PackageNotFoundError:
        return None


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/version")
def version() -> dict[str, Any]:
    return {
        "service": "single-slot-job-runner",
        "api": "v1",
        "schema_version": int(SCHEMA_VERSION),
        "deps": {
            "fastapi": _pkg_version("fastapi"),
            "pydantic": _pkg_version("pydantic"),
            "uvicorn": _pkg_version("uvicorn"),
        },
        "ts": time.time(),
    }


@router.get("/system/runner")
async def system_runner(request: Request) -> dict[str, Any]:
    # Runner snapshot is read on the loop, next to the state it describes.
    worker = get_optional_worker(request)
    runner_snapshot: dict[str, Any] = {"enabled": worker is not None}
    if worker is not None:
        runner_snapshot.update(worker.status_snapshot())

    store = SQLiteStore()
    try:
        return {
            "ts": time.time(),
            "runner": runner_snapshot,
            "queue": {"jobs_by_status": store.count_jobs_by_status()},
            "startup": {
                "reconciled_running_jobs": getattr(request.app.state, "reconciled_running_jobs", 0),
            },
        }
    finally:
        store.close()
