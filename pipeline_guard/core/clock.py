"""
Clock and periodic task ticker.

Every time-dependent component reads time through a Clock so tests can move
time forward deterministically instead of sleeping.
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Protocol

logger = logging.getLogger(__name__)


class Clock(Protocol):
    """Source of the current time in epoch seconds."""

    def now(self) -> float:
        ...


class SystemClock:
    """Wall clock backed by time.time()."""

    def now(self) -> float:
        return time.time()


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self._now = float(start)

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> float:
        """Move the clock forward and return the new time."""
        if seconds < 0:
            raise ValueError("cannot move the clock backwards")
        self._now += seconds
        return self._now

    def set(self, timestamp: float) -> None:
        self._now = float(timestamp)


@dataclass
class PeriodicTask:
    """A named callable run every `interval` seconds."""
    name: str
    interval: float
    callback: Callable[[], Any]
    next_run: float
    runs: int = 0

    def __post_init__(self):
        if self.interval <= 0:
            raise ValueError("interval must be > 0")


class Ticker:
    """Runs registered periodic tasks against a Clock.

    `run_pending()` executes each task whose next run time has passed, so
    tests can advance a ManualClock and drive maintenance loops by hand.
    `run_forever()` polls the same method on the event loop in production.
    """

    def __init__(self, clock: Clock, poll_interval: float = 1.0):
        self.clock = clock
        self.poll_interval = poll_interval
        self._tasks: Dict[str, PeriodicTask] = {}
        self._running = False

    def every(self, interval: float, name: str, callback: Callable[[], Any]) -> PeriodicTask:
        """Register `callback` to run every `interval` seconds."""
        if name in self._tasks:
            raise ValueError(f"task already registered: {name}")
        task = PeriodicTask(
            name=name,
            interval=interval,
            callback=callback,
            next_run=self.clock.now() + interval,
        )
        self._tasks[name] = task
        return task

    def cancel(self, name: str) -> None:
        self._tasks.pop(name, None)

    @property
    def tasks(self) -> List[PeriodicTask]:
        return list(self._tasks.values())

    async def run_pending(self) -> List[str]:
        """Run every due task once and return the names of the tasks run."""
        now = self.clock.now()
        due = sorted(
            (t for t in self._tasks.values() if t.next_run <= now),
            key=lambda t: t.next_run,
        )
        ran = []
        for task in due:
            task.next_run = now + task.interval
            task.runs += 1
            try:
                result = task.callback()
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Periodic task %s failed", task.name)
            ran.append(task.name)
        return ran

    async def run_forever(self) -> None:
        self._running = True
        logger.info("Ticker started with %d tasks", len(self._tasks))
        while self._running:
            await self.run_pending()
            await asyncio.sleep(self.poll_interval)
        logger.info("Ticker stopped")

    def stop(self) -> None:
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

