"""
Named timers on the event loop.

Each timer is an asyncio task tracked by name, so shutdown can cancel every one of
them. A tick that raises is logged and the timer keeps running.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from perpbot.utils import get_logger

logger = get_logger(__name__)

TimerCallback = Callable[[], Awaitable[Any]]


class Scheduler:
    """
    Periodic and one-shot timers keyed by name.

    Example:
        ```python
        scheduler = Scheduler()
        scheduler.add_periodic("heartbeat", 10, engine.heartbeat)
        scheduler.add_oneshot("first_decision", 5, engine.run_decision_cycle)
        ...
        await scheduler.close()
        ```
    """

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task] = {}
        self._closed = False

    @property
    def names(self) -> list[str]:
        return [name for name, task in self._tasks.items() if not task.done()]

    def is_scheduled(self, name: str) -> bool:
        task = self._tasks.get(name)
        return task is not None and not task.done()

    async def _run_callback(self, name: str, callback: TimerCallback) -> None:
        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("timer_callback_failed", timer=name, error=str(e), exc_info=True)

    async def _periodic(
        self, name: str, interval: float, callback: TimerCallback, initial_delay: float | None
    ) -> None:
        await asyncio.sleep(interval if initial_delay is None else initial_delay)
        while True:
            await self._run_callback(name, callback)
            await asyncio.sleep(interval)

    async def _oneshot(self, name: str, delay: float, callback: TimerCallback) -> None:
        await asyncio.sleep(delay)
        # Drop the handle before running so the callback can re-arm this name.
        if self._tasks.get(name) is asyncio.current_task():
            del self._tasks[name]
        await self._run_callback(name, callback)

    def _register(self, name: str, coro: Awaitable[None]) -> asyncio.Task | None:
        if self._closed:
            logger.debug("timer_rejected_after_close", timer=name)
            coro.close()
            return None
        self.cancel(name)
        task = asyncio.create_task(coro, name=f"timer-{name}")
        self._tasks[name] = task
        return task

    def add_periodic(
        self,
        name: str,
        interval: float,
        callback: TimerCallback,
        initial_delay: float | None = None,
    ) -> asyncio.Task | None:
        """Run ``callback`` every ``interval`` seconds; replaces a timer of the same name."""
        if interval <= 0:
            raise ValueError(f"Timer interval must be positive: {name}={interval}")
        logger.debug("timer_added", timer=name, interval=interval)
        return self._register(name, self._periodic(name, interval, callback, initial_delay))

    def add_oneshot(self, name: str, delay: float, callback: TimerCallback) -> asyncio.Task | None:
        """Run ``callback`` once after ``delay`` seconds; replaces a timer of the same name."""
        logger.debug("oneshot_added", timer=name, delay=delay)
        return self._register(name, self._oneshot(name, max(0.0, delay), callback))

    def cancel(self, name: str) -> bool:
        task = self._tasks.get(name)
        if task is None or task.done():
            self._tasks.pop(name, None)
            return False
        if task is asyncio.current_task():
            return False
        del self._tasks[name]
        task.cancel()
        return True

    def cancel_all(self) -> None:
        for name in list(self._tasks):
            self.cancel(name)

    async def close(self) -> None:
        """Stop accepting timers and cancel all running ones."""
        self._closed = True
        current = asyncio.current_task()
        tasks = [task for task in self._tasks.values() if task is not current and not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("scheduler_closed", cancelled=len(tasks))
