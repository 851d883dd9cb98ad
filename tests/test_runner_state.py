from __future__ import annotations

import pytest

from src.runtime.runner_state import Event, InvalidTransition, Phase, RunnerState, transition


def test_initial_state_is_idle_and_pollable() -> None:
    s = RunnerState()
    assert s.phase == Phase.IDLE
    assert not s.halted
    assert s.can_poll()
    assert s.status == "idle"


def test_full_cycle_transitions() -> None:
    s = transition(RunnerState(), Event.POLL)
    assert s.phase == Phase.POLLING
    s = transition(s, Event.JOB_FOUND)
    assert s.phase == Phase.EXECUTING
    assert s.in_flight
    s = transition(s, Event.FAILED)
    assert s.phase == Phase.BACKOFF
    s = transition(s, Event.ALARM_FIRED)
    assert s.phase == Phase.IDLE
    s = transition(transition(s, Event.POLL), Event.NO_JOB)
    assert s.phase == Phase.BACKOFF
    s = transition(s, Event.ALARM_CANCELLED)
    assert s.phase == Phase.IDLE


def test_success_returns_to_idle() -> None:
    s = RunnerState(phase=Phase.EXECUTING)
    assert transition(s, Event.SUCCEEDED) == RunnerState(phase=Phase.IDLE)


@pytest.mark.parametrize("phase", [Phase.POLLING, Phase.EXECUTING, Phase.BACKOFF])
def test_poll_is_rejected_unless_idle(phase: Phase) -> None:
    with pytest.raises(InvalidTransition):
        transition(RunnerState(phase=phase), Event.POLL)


def test_poll_is_rejected_while_halted() -> None:
    with pytest.raises(InvalidTransition):
        transition(RunnerState(halted=True), Event.POLL)


def test_halt_keeps_phase() -> None:
    s = transition(RunnerState(phase=Phase.BACKOFF), Event.HALT)
    assert s == RunnerState(phase=Phase.BACKOFF, halted=True)
    assert s.status == "backoff"
    # Alarm still fires; the runner lands in idle+halted.
    s = transition(s, Event.ALARM_FIRED)
    assert s.status == "halted"
    assert not s.can_poll()


def test_resume_clears_halt_only() -> None:
    s = transition(RunnerState(phase=Phase.EXECUTING, halted=True), Event.RESUME)
    assert s == RunnerState(phase=Phase.EXECUTING, halted=False)


def test_aborted_only_from_in_flight_phases() -> None:
    assert transition(RunnerState(phase=Phase.POLLING), Event.ABORTED).phase == Phase.IDLE
    assert transition(RunnerState(phase=Phase.EXECUTING), Event.ABORTED).phase == Phase.IDLE
    with pytest.raises(InvalidTransition):
        transition(RunnerState(phase=Phase.BACKOFF), Event.ABORTED)


def test_invalid_transition_carries_context() -> None:
    with pytest.raises(InvalidTransition) as e:
        transition(RunnerState(), Event.ALARM_FIRED)
    assert e.value.event == Event.ALARM_FIRED
    assert e.value.state == RunnerState()
