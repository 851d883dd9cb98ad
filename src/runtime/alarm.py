from __future__ import annotations

import asyncio
from typing import Any, Callable, Protocol


class AlarmHandle(Protocol):
    def cancel(self) -> None: ...


class Alarm(Protocol):
    """One-shot delayed callback with a cancel handle.

    The callback must run on the scheduler's own execution context (for the
    default implementation: the running asyncio loop).
    """

    def arm(self, delay_s: float, callback: Callable[[], Any]) -> AlarmHandle: ...

    def cancel(self, handle: AlarmHandle) -> None: ...


class LoopAlarm:
    """Alarm backed by `loop.call_later` on the running event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop

    def arm(self, delay_s: float, callback: Callable[[], Any]) -> asyncio.TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(max(0.0, float(delay_s)), callback)

    def cancel(self, handle: AlarmHandle) -> None:
        handle.cancel()
