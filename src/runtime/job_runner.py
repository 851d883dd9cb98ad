from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Generic, Protocol, TypeVar, Union

from src.runtime.alarm import Alarm, AlarmHandle, LoopAlarm
from src.runtime.runner_state import Event, Phase, RunnerState, transition


logger = logging.getLogger(__name__)

DEFAULT_TICK_RATE_MS = 5000


class HasId(Protocol):
    @property
    def id(self) -> str: ...


JobT = TypeVar("JobT", bound=HasId)
InputT = TypeVar("InputT")


@dataclass(frozen=True)
class Completed:
    ok: bool


@dataclass(frozen=True)
class Failed:
    error: Exception


JobOutcome = Union[Completed, Failed]


async def _call(fn: Callable[..., Any], *args: Any) -> Any:
    """Call a sync or async collaborator."""
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class JobRunner(Generic[JobT, InputT]):
    """Single-slot poll/execute/backoff loop.

    At most one of {pending backoff alarm, in-flight poll/execute cycle} exists
    at any time. All entry points run on one asyncio loop; each check of the
    state and the transition that follows happen with no `await` in between.

    Faults raised by `query_next_job`, `insert_job` or the completion callbacks
    are not caught here. Cycles started from the alarm, `submit()` or `resume()`
    run as loop tasks, so their faults reach the loop's exception handler.
    """

    def __init__(
        self,
        *,
        query_next_job: Callable[[], Any],
        insert_job: Callable[..., Any],
        process_job: Callable[[JobT], Any],
        on_job_completed: Callable[[JobT, bool], Any],
        on_job_failed: Callable[[JobT, Exception], Any],
        log_job: Callable[[str], None] | None = None,
        tick_rate_ms: int = DEFAULT_TICK_RATE_MS,
        alarm: Alarm | None = None,
    ) -> None:
        if int(tick_rate_ms) < 0:
            raise ValueError(f"tick_rate_ms must be >= 0, got {tick_rate_ms!r}")
        self._query_next_job = query_next_job
        self._insert_job = insert_job
        self._process_job = process_job
        self._on_job_completed = on_job_completed
        self._on_job_failed = on_job_failed
        self._log_job = log_job
        self._tick_rate_ms = int(tick_rate_ms)
        self._alarm: Alarm = alarm or LoopAlarm()

        self._state = RunnerState()
        self._alarm_handle: AlarmHandle | None = None
        self._tasks: set[asyncio.Task[None]] = set()
        self._last_outcome: JobOutcome | None = None
        self._jobs_started = 0

    @property
    def state(self) -> RunnerState:
        return self._state

    @property
    def tick_rate_ms(self) -> int:
        return self._tick_rate_ms

    @property
    def backoff_pending(self) -> bool:
        return self._alarm_handle is not None

    def snapshot(self) -> dict[str, Any]:
        last: dict[str, Any] | None = None
        if isinstance(self._last_outcome, Completed):
            last = {"kind": "completed", "ok": self._last_outcome.ok}
        elif isinstance(self._last_outcome, Failed):
            last = {"kind": "failed", "error": str(self._last_outcome.error)}
        return {
            "status": self._state.status,
            "phase": self._state.phase.value,
            "halted": self._state.halted,
            "backoff_pending": self.backoff_pending,
            "tick_rate_ms": self._tick_rate_ms,
            "jobs_started": self._jobs_started,
            "last_outcome": last,
        }

    def _log(self, message: str, job: JobT | None = None) -> None:
        line = message if job is None else f"{job.id}: {message}"
        logger.debug(line)
        if self._log_job is not None:
            self._log_job(line)

    def _advance(self, event: Event) -> None:
        self._state = transition(self._state, event)

    # --- Entry points
    def start(self) -> None:
        """Schedule the first poll on the running loop."""
        self._spawn_poll()

    async def poll(self) -> None:
        """Fetch and run jobs until the source is empty, a job fails, or the runner is halted."""
        if self._alarm_handle is not None:
            self._log("poll ignored: backoff pending")
            return
        if self._state.halted:
            self._log("poll ignored: halted")
            return
        if self._state.in_flight:
            self._log("poll ignored: cycle in flight")
            return

        self._advance(Event.POLL)
        try:
            while True:
                self._log("getJob")
                job = await _call(self._query_next_job)
                if job is None:
                    self._enter_backoff(Event.NO_JOB)
                    return

                self._advance(Event.JOB_FOUND)
                outcome = await self._run_job(job)
                if isinstance(outcome, Completed) and outcome.ok:
                    self._advance(Event.SUCCEEDED)
                    if not self._state.can_poll():
                        self._log("halted after job", job)
                        return
                    # Successful cycles free-run: no delay before the next fetch.
                    self._advance(Event.POLL)
                    continue

                self._enter_backoff(Event.FAILED)
                return
        except BaseException:
            # The loop stops here; leave the runner restartable.
            if self._state.in_flight:
                self._advance(Event.ABORTED)
            raise

    async def submit(self, data: InputT, tx: Any = None) -> JobT:
        """Insert a job through the source, then attempt a poll.

        A submission that lands during backoff does not cut the wait short.
        """
        if tx is None:
            job = await _call(self._insert_job, data)
        else:
            job = await _call(self._insert_job, data, tx)
        self._log("submitted", job)
        self._spawn_poll()
        return job

    def halt(self) -> None:
        self._advance(Event.HALT)
        self._log("halted")

    def resume(self) -> None:
        """Clear the halt flag and poll now, skipping any backoff still owed."""
        was_halted = self._state.halted
        self._advance(Event.RESUME)
        if was_halted and self._alarm_handle is not None:
            self._cancel_backoff()
        self._log("resumed")
        self._spawn_poll()

    def on_alarm(self) -> None:
        """Backoff alarm callback; runs on the loop."""
        if self._state.phase != Phase.BACKOFF:
            return
        self._alarm_handle = None
        self._advance(Event.ALARM_FIRED)
        self._log("tick")
        self._spawn_poll()

    async def join(self) -> None:
        """Wait for poll cycles started by submit/resume/alarm to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        """Halt, drop any pending backoff and wait for in-flight cycles."""
        if not self._state.halted:
            self.halt()
        if self._alarm_handle is not None:
            self._cancel_backoff()
        await self.join()
        # A cycle that was in flight may have armed a fresh backoff on its way out.
        if self._alarm_handle is not None:
            self._cancel_backoff()

    # --- Internals
    async def _run_job(self, job: JobT) -> JobOutcome:
        self._jobs_started += 1
        self._log("started", job)

        outcome: JobOutcome
        try:
            ok = await _call(self._process_job, job)
        except Exception as e:
            logger.warning("Job %s raised during processing", job.id, exc_info=True)
            outcome = Failed(error=e)
        else:
            outcome = Completed(ok=bool(ok))
        self._last_outcome = outcome

        if isinstance(outcome, Failed):
            await _call(self._on_job_failed, job, outcome.error)
            self._log("failed", job)
        else:
            self._log("completed" if outcome.ok else "not completed", job)
            await _call(self._on_job_completed, job, outcome.ok)
        return outcome

    def _enter_backoff(self, event: Event) -> None:
        # Arm before leaving the cycle: if arming raises, the cycle aborts to idle.
        self._log("idle")
        self._alarm_handle = self._alarm.arm(self._tick_rate_ms / 1000.0, self.on_alarm)
        self._advance(event)

    def _cancel_backoff(self) -> None:
        handle = self._alarm_handle
        self._alarm_handle = None
        if handle is not None:
            self._alarm.cancel(handle)
        self._advance(Event.ALARM_CANCELLED)

    def _spawn_poll(self) -> None:
        task = asyncio.get_running_loop().create_task(self.poll())
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            task.get_loop().call_exception_handler(
                {"message": "Job runner poll cycle raised", "exception": exc, "task": task}
            )
