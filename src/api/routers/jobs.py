from __future__ import annotations

import hashlib
import json
from typing import Any

from fastapi import APIRouter, Depends, Header, Query, Request
from pydantic import BaseModel, Field

from src.api.dependencies import get_app_config, get_optional_worker
from src.api.errors import APIError
from src.api.pagination import CursorError, encode_page, page_position
from src.config.load_config import AppConfig
from src.storage.sqlite_store import JOB_STATUSES, JobInput, JobNotFoundError, SQLiteStore


router = APIRouter()


class CreateJobRequest(BaseModel):
    tenant_id: str = Field(min_length=1, description="Owning tenant.")
    job_type: str = Field(min_length=1, description="Handler key, e.g. 'noop'.")
    payload: dict[str, Any] = Field(default_factory=dict)


def _position_or_400(cursor: str | None) -> tuple[float, str] | None:
    try:
        return page_position(cursor)
    except CursorError as e:
        raise APIError(status_code=400, code="invalid_argument", message=str(e)) from e


def _clamp_limit(limit: int | None, cfg: AppConfig) -> int:
    if limit is None:
        return cfg.api.list_default_limit
    return min(int(limit), cfg.api.list_max_limit)


@router.post("/jobs")
async def create_job(
    body: CreateJobRequest,
    request: Request,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    cfg: AppConfig = Depends(get_app_config),
) -> dict[str, Any]:
    worker = get_optional_worker(request)

    job_type = body.job_type.strip()
    allowed = cfg.jobs.allowed_types or (tuple(worker.registry.types()) if worker is not None else ())
    if allowed and job_type not in allowed:
        raise APIError(
            status_code=400,
            code="invalid_argument",
            message=f"Unsupported job_type: {job_type!r}.",
            details={"allowed": list(allowed)},
        )

    # Idempotency: hash the raw request body.
    req_json = json.dumps(body.model_dump(mode="json"), ensure_ascii=False, sort_keys=True, separators=(",", ":"))
    request_hash = hashlib.sha256(req_json.encode("utf-8")).hexdigest()

    data = JobInput(tenant_id=body.tenant_id.strip(), job_type=job_type, payload=dict(body.payload))

    store = SQLiteStore()
    try:
        with store.transaction(mode="IMMEDIATE") as tx:
            if idempotency_key:
                existing = store.get_idempotency(str(idempotency_key))
                if existing is not None:
                    if str(existing["request_hash"]) != request_hash:
                        raise APIError(
                            status_code=409,
                            code="conflict",
                            message="Idempotency-Key was already used with a different request body.",
                        )
                    return json.loads(str(existing["response_json"]))

            try:
                if worker is not None:
                    # The insert joins this transaction; the runner's poll runs after commit.
                    job = await worker.submit(data, tx=tx)
                else:
                    job = store.insert_job(data, tx)
            except ValueError as e:
                raise APIError(status_code=400, code="invalid_argument", message=str(e)) from e

            response: dict[str, Any] = {"job": job.to_dict()}
            if idempotency_key:
                store.put_idempotency(
                    key=str(idempotency_key),
                    request_hash=request_hash,
                    response_json=json.dumps(response, ensure_ascii=False, separators=(",", ":")),
                    commit=False,
                )
            return response
    finally:
        store.close()


@router.get("/jobs")
def list_jobs(
    limit: int | None = Query(default=None, ge=1),
    cursor: str | None = Query(default=None),
    status: list[str] | None = Query(default=None),
    tenant_id: str | None = Query(default=None),
    cfg: AppConfig = Depends(get_app_config),
) -> dict[str, Any]:
    for s in status or []:
        if s not in JOB_STATUSES:
            raise APIError(
                status_code=400,
                code="invalid_argument",
                message=f"Unknown status: {s!r}.",
                details={"allowed": list(JOB_STATUSES)},
            )
    position = _position_or_400(cursor)

    store = SQLiteStore()
    try:
        page = store.list_jobs_page(
            limit=_clamp_limit(limit, cfg),
            cursor=position,
            statuses=status or None,
            tenant_id=(tenant_id or "").strip() or None,
        )
        return encode_page(page)
    finally:
        store.close()


@router.get("/jobs/{job_id}")
def get_job(job_id: str) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        job = store.get_job(job_id=job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return {"job": job.to_dict()}
    finally:
        store.close()


@router.get("/jobs/{job_id}/events")
def list_job_events(
    job_id: str,
    limit: int | None = Query(default=None, ge=1),
    cursor: str | None = Query(default=None),
    event_type: list[str] | None = Query(default=None),
    cfg: AppConfig = Depends(get_app_config),
) -> dict[str, Any]:
    position = _position_or_400(cursor)

    store = SQLiteStore()
    try:
        if store.get_job(job_id=job_id) is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        page = store.list_events_page(
            job_id=job_id,
            limit=_clamp_limit(limit, cfg),
            cursor=position,
            event_types=event_type or None,
        )
        return encode_page(page)
    finally:
        store.close()
