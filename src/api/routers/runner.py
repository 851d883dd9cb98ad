from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from src.api.dependencies import get_worker
from src.runtime.worker import JobWorker


router = APIRouter()

# These handlers touch runner state, so they must run on the event loop (async def).


@router.post("/runner/halt")
async def halt_runner(worker: JobWorker = Depends(get_worker)) -> dict[str, Any]:
    """Stop starting new polls. An in-flight job finishes normally."""
    worker.halt()
    return {"runner": worker.status_snapshot()}


@router.post("/runner/resume")
async def resume_runner(worker: JobWorker = Depends(get_worker)) -> dict[str, Any]:
    """Clear the halt and poll now, skipping any remaining backoff."""
    worker.resume()
    return {"runner": worker.status_snapshot()}
