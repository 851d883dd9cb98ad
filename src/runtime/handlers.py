from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable

from src.storage.sqlite_store import JobRecord


Handler = Callable[[JobRecord], Any]


class UnknownJobTypeError(LookupError):
    def __init__(self, job_type: str) -> None:
        super().__init__(f"No handler registered for job type {job_type!r}.")
        self.job_type = job_type


class HandlerRegistry:
    """Job type -> handler. Handlers return a success flag and may raise."""

    def __init__(self) -> None:
        self._handlers: dict[str, Handler] = {}

    def register(self, job_type: str, handler: Handler | None = None) -> Any:
        """Register a handler directly or as a decorator."""
        key = (job_type or "").strip()
        if not key:
            raise ValueError("job_type is required.")

        def _add(fn: Handler) -> Handler:
            self._handlers[key] = fn
            return fn

        if handler is not None:
            return _add(handler)
        return _add

    def types(self) -> list[str]:
        return sorted(self._handlers)

    def get(self, job_type: str) -> Handler:
        fn = self._handlers.get(job_type)
        if fn is None:
            raise UnknownJobTypeError(job_type)
        return fn

    async def process_job(self, job: JobRecord) -> bool:
        fn = self.get(job.job_type)
        if inspect.iscoroutinefunction(fn):
            result = await fn(job)
        else:
            # Blocking handlers run off-loop so halt/submit stay responsive.
            result = await asyncio.to_thread(fn, job)
        return bool(result)


def _noop(job: JobRecord) -> bool:
    return True


def _fail(job: JobRecord) -> bool:
    return False


def default_registry() -> HandlerRegistry:
    """Registry with the built-in dry-run handlers (`noop`, `fail`)."""
    registry = HandlerRegistry()
    registry.register("noop", _noop)
    registry.register("fail", _fail)
    return registry
