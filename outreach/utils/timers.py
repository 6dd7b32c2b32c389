"""
Keyed one-shot timers.

The scheduler is injected into the funnel orchestrator so tests can fire
timers on demand instead of waiting on the event loop. Timers are lost on
process restart; the periodic sweep job covers that.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Protocol

from outreach.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

TimerCallback = Callable[[], Awaitable[None]]


class TimerScheduler(Protocol):
    def schedule(self, key: str, delay_seconds: float, callback: TimerCallback) -> None:
        """Arm a timer, replacing any timer already registered under key."""

    def cancel(self, key: str) -> bool:
        """Cancel the timer under key. Returns True if one was pending."""

    def cancel_all(self) -> None: ...

    def pending(self) -> list[str]: ...


class AsyncioTimerScheduler:
    """Timers backed by loop.call_later; callbacks run as tasks."""

    def __init__(self):
        self._handles: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task] = set()

    def schedule(self, key: str, delay_seconds: float, callback: TimerCallback) -> None:
        self.cancel(key)
        loop = asyncio.get_running_loop()
        self._handles[key] = loop.call_later(max(0.0, delay_seconds), self._fire, key, callback)

    def _fire(self, key: str, callback: TimerCallback) -> None:
        self._handles.pop(key, None)
        task = asyncio.ensure_future(self._run(key, callback))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, key: str, callback: TimerCallback) -> None:
        try:
            await callback()
        except Exception as e:
            logger.warning("Timer callback failed", timer_key=key, error=str(e), error_type=type(e).__name__)

    def cancel(self, key: str) -> bool:
        handle = self._handles.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self) -> None:
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()

    def pending(self) -> list[str]:
        return list(self._handles)
