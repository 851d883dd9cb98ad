from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Callable

import pytest


# Ensure `import src...` works when running `pytest` from repo root.
REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))


class ManualHandle:
    def __init__(self, delay_s: float, callback: Callable[[], Any]) -> None:
        self.delay_s = delay_s
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualAlarm:
    """Alarm that only fires when a test calls `fire()`."""

    def __init__(self) -> None:
        self.handles: list[ManualHandle] = []

    def arm(self, delay_s: float, callback: Callable[[], Any]) -> ManualHandle:
        handle = ManualHandle(delay_s, callback)
        self.handles.append(handle)
        return handle

    def cancel(self, handle: ManualHandle) -> None:
        handle.cancel()

    @property
    def delays(self) -> list[float]:
        return [h.delay_s for h in self.handles]

    @property
    def pending(self) -> list[ManualHandle]:
        return [h for h in self.handles if not h.cancelled and not h.fired]

    def fire(self) -> None:
        pending = self.pending
        assert len(pending) == 1, f"expected exactly one pending alarm, got {len(pending)}"
        handle = pending[0]
        handle.fired = True
        handle.callback()


@pytest.fixture
def manual_alarm() -> ManualAlarm:
    return ManualAlarm()
