from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class SimulationClock:
    """Monotonic simulated time; advanced explicitly, never from the wall clock."""

    def __init__(self, start: float = 0.0) -> None:
        self._now = float(start)

    @property
    def now(self) -> float:
        return self._now

    def advance(self, dt: float) -> float:
        if dt < 0.0:
            raise ValueError(f"Cannot advance the clock backwards (dt={dt})")
        self._now += dt
        return self._now

    def reset(self, start: float = 0.0) -> None:
        self._now = float(start)


@dataclass
class PeriodicTask:
    name: str
    interval: float
    callback: Callable[[float], None]
    next_due: float = 0.0
    runs: int = field(default=0, init=False)
    cancelled: bool = field(default=False, init=False)

    def __post_init__(self) -> None:
        if self.interval <= 0.0:
            raise ValueError(f"Task '{self.name}' needs a positive interval, got {self.interval}")


class Scheduler:
    """
    Cooperative periodic task runner.

    ``run_due(now)`` runs each task whose due time has passed at most once,
    in registration order, then schedules it one interval later.
    """

    def __init__(self) -> None:
        self._tasks: List[PeriodicTask] = []

    def add(
        self,
        name: str,
        interval: float,
        callback: Callable[[float], None],
        now: float = 0.0,
        first_delay: Optional[float] = None,
    ) -> PeriodicTask:
        delay = interval if first_delay is None else first_delay
        task = PeriodicTask(name=name, interval=interval, callback=callback, next_due=now + delay)
        self._tasks.append(task)
        logger.debug("Scheduled task %s every %.2fs (first at %.2f)", name, interval, task.next_due)
        return task

    def get(self, name: str) -> Optional[PeriodicTask]:
        return next((task for task in self._tasks if task.name == name), None)

    def run_due(self, now: float) -> List[str]:
        ran: List[str] = []
        for task in list(self._tasks):
            if task.cancelled or now < task.next_due:
                continue
            task.callback(now)
            task.runs += 1
            task.next_due += task.interval
            if task.next_due <= now:
                task.next_due = now + task.interval
            ran.append(task.name)
        self._tasks = [task for task in self._tasks if not task.cancelled]
        return ran

    def cancel(self, name: str) -> None:
        for task in self._tasks:
            if task.name == name:
                task.cancelled = True
        self._tasks = [task for task in self._tasks if not task.cancelled]

    def cancel_all(self) -> None:
        for task in self._tasks:
            task.cancelled = True
        if self._tasks:
            logger.debug("Cancelled %d scheduled tasks", len(self._tasks))
        self._tasks = []

    def __len__(self) -> int:
        return len(self._tasks)
