from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum


class Phase(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    EXECUTING = "executing"
    BACKOFF = "backoff"


class Event(str, Enum):
    POLL = "poll"
    JOB_FOUND = "job_found"
    NO_JOB = "no_job"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ALARM_FIRED = "alarm_fired"
    ALARM_CANCELLED = "alarm_cancelled"
    HALT = "halt"
    RESUME = "resume"
    ABORTED = "aborted"


class InvalidTransition(RuntimeError):
    def __init__(self, state: "RunnerState", event: Event) -> None:
        super().__init__(f"Event {event.value!r} is not valid in state {state.status!r}.")
        self.state = state
        self.event = event


@dataclass(frozen=True)
class RunnerState:
    """Runner state value.

    `halted` is tracked separately from `phase`: halting never cancels a
    pending alarm or an in-flight cycle, it only gates the next poll.
    """

    phase: Phase = Phase.IDLE
    halted: bool = False

    @property
    def in_flight(self) -> bool:
        return self.phase in {Phase.POLLING, Phase.EXECUTING}

    @property
    def status(self) -> str:
        if self.halted and self.phase == Phase.IDLE:
            return "halted"
        return self.phase.value

    def can_poll(self) -> bool:
        return self.phase == Phase.IDLE and not self.halted


# (phase, event) -> next phase. HALT/RESUME/ABORTED are handled separately.
_PHASE_TABLE: dict[tuple[Phase, Event], Phase] = {
    (Phase.POLLING, Event.NO_JOB): Phase.BACKOFF,
    (Phase.POLLING, Event.JOB_FOUND): Phase.EXECUTING,
    (Phase.EXECUTING, Event.SUCCEEDED): Phase.IDLE,
    (Phase.EXECUTING, Event.FAILED): Phase.BACKOFF,
    (Phase.BACKOFF, Event.ALARM_FIRED): Phase.IDLE,
    (Phase.BACKOFF, Event.ALARM_CANCELLED): Phase.IDLE,
}


def transition(state: RunnerState, event: Event) -> RunnerState:
    """Pure transition function. Raises InvalidTransition for illegal events."""
    if event == Event.POLL:
        if not state.can_poll():
            raise InvalidTransition(state, event)
        return replace(state, phase=Phase.POLLING)

    if event == Event.HALT:
        return replace(state, halted=True)

    if event == Event.RESUME:
        return replace(state, halted=False)

    if event == Event.ABORTED:
        if not state.in_flight:
            raise InvalidTransition(state, event)
        return replace(state, phase=Phase.IDLE)

    nxt = _PHASE_TABLE.get((state.phase, event))
    if nxt is None:
        raise InvalidTransition(state, event)
    return replace(state, phase=nxt)
