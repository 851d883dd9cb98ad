from __future__ import annotations

import asyncio
import logging
import threading
import traceback
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from src.config.load_config import AppConfig
from src.runtime.alarm import Alarm
from src.runtime.handlers import HandlerRegistry, default_registry
from src.runtime.job_runner import DEFAULT_TICK_RATE_MS, JobRunner
from src.storage.sqlite_store import JobInput, JobRecord, SQLiteStore, SQLiteTransaction


trace_logger = logging.getLogger("src.runtime.trace")

T = TypeVar("T")


@dataclass(frozen=True)
class WorkerConfig:
    tick_rate_ms: int = DEFAULT_TICK_RATE_MS
    max_retries: int = 3


class JobWorker:
    """Single background runner over the SQLite job queue.

    The store is the job source and the completion sink: every claim and
    outcome is recorded as a trace event on the job.

    Store calls run in worker threads (one at a time) so a locked database
    stalls the cycle, not the event loop. The store must be opened with
    `check_same_thread=False`.
    """

    def __init__(
        self,
        *,
        store: SQLiteStore,
        registry: HandlerRegistry | None = None,
        config: WorkerConfig | None = None,
        alarm: Alarm | None = None,
    ) -> None:
        self._store = store
        self._registry = registry or default_registry()
        self._config = config or WorkerConfig()
        self._store_lock = threading.Lock()
        self._runner: JobRunner[JobRecord, JobInput] = JobRunner(
            query_next_job=self._claim_next_job,
            insert_job=self._insert_job,
            process_job=self._registry.process_job,
            on_job_completed=self._on_job_completed,
            on_job_failed=self._on_job_failed,
            log_job=self._log_line,
            tick_rate_ms=self._config.tick_rate_ms,
            alarm=alarm,
        )

    @classmethod
    def from_config(
        cls,
        cfg: AppConfig,
        *,
        store: SQLiteStore,
        registry: HandlerRegistry | None = None,
        alarm: Alarm | None = None,
    ) -> "JobWorker":
        return cls(
            store=store,
            registry=registry,
            config=WorkerConfig(tick_rate_ms=cfg.runner.tick_rate_ms, max_retries=cfg.jobs.max_retries),
            alarm=alarm,
        )

    @property
    def runner(self) -> JobRunner[JobRecord, JobInput]:
        return self._runner

    @property
    def registry(self) -> HandlerRegistry:
        return self._registry

    def status_snapshot(self) -> dict[str, Any]:
        snap = self._runner.snapshot()
        snap.update(
            {
                "max_retries": int(self._config.max_retries),
                "db_path": str(self._store.db_path),
                "job_types": self._registry.types(),
            }
        )
        return snap

    def start(self) -> None:
        self._runner.start()

    async def stop(self) -> None:
        await self._runner.aclose()

    async def submit(self, data: JobInput, *, tx: SQLiteTransaction | None = None) -> JobRecord:
        return await self._runner.submit(data, tx)

    def halt(self) -> None:
        self._runner.halt()

    def resume(self) -> None:
        self._runner.resume()

    # --- Runner collaborators
    def _log_line(self, line: str) -> None:
        trace_logger.info(line)

    async def _in_thread(self, fn: Callable[..., T], *args: Any) -> T:
        def locked() -> T:
            with self._store_lock:
                return fn(*args)

        return await asyncio.to_thread(locked)

    async def _insert_job(self, data: JobInput, tx: SQLiteTransaction | None = None) -> JobRecord:
        if tx is not None:
            # The caller's transaction lives on the caller's thread.
            return self._store.insert_job(data, tx)
        return await self._in_thread(self._store.insert_job, data)

    async def _claim_next_job(self) -> JobRecord | None:
        return await self._in_thread(self._claim_and_trace)

    async def _on_job_completed(self, job: JobRecord, completed: bool) -> None:
        await self._in_thread(self._record_completed, job, completed)

    async def _on_job_failed(self, job: JobRecord, error: Exception) -> None:
        await self._in_thread(self._record_failed, job, error)

    def _claim_and_trace(self) -> JobRecord | None:
        job = self._store.claim_next_job()
        if job is not None:
            self._store.append_event(job.job_id, "job_claimed", {"job_type": job.job_type, "retry": job.retry})
        return job

    def _record_completed(self, job: JobRecord, completed: bool) -> None:
        if completed:
            self._store.complete_job(job.job_id)
            self._store.append_event(job.job_id, "job_completed", {})
            return

        updated = self._store.requeue_or_fail_job(
            job.job_id, error="not_completed", max_retries=self._config.max_retries
        )
        self._store.append_event(
            job.job_id,
            "job_not_completed",
            {"status": updated.status, "retry": updated.retry},
        )

    def _record_failed(self, job: JobRecord, error: Exception) -> None:
        message = str(error) or type(error).__name__
        updated = self._store.requeue_or_fail_job(
            job.job_id, error=message, max_retries=self._config.max_retries
        )
        self._store.append_event(
            job.job_id,
            "job_failed",
            {
                "error": message,
                "type": type(error).__name__,
                "traceback": "".join(traceback.format_exception(type(error), error, error.__traceback__)),
                "status": updated.status,
                "retry": updated.retry,
            },
        )
