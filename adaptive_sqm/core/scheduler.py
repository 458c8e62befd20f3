"""Named periodic jobs on top of an injectable clock."""

import asyncio
from datetime import datetime
from typing import Awaitable, Callable, Optional

from ..utils.logging import get_logger
from .clock import Clock, SystemClock

logger = get_logger("core.scheduler")

IntervalFn = Callable[[datetime], float]
JobFn = Callable[[], Awaitable[None]]


class Scheduler:
    """Runs each job in its own task so a slow job never delays another.

    The interval function is re-evaluated after every run, which lets a job
    change cadence (dense learning phase to sparse phase) without being
    rescheduled. Cancelling is explicit and observable through
    ``job_names``.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self.clock: Clock = clock or SystemClock()
        self._jobs: dict[str, asyncio.Task] = {}

    def schedule_periodic(
        self,
        name: str,
        interval_fn: IntervalFn,
        job: JobFn,
        run_immediately: bool = False,
    ) -> asyncio.Task:
        self.cancel(name)
        task = asyncio.create_task(
            self._run(name, interval_fn, job, run_immediately), name=f"sqm:{name}"
        )
        self._jobs[name] = task
        logger.debug("job_scheduled", job=name)
        return task

    async def _run(self, name: str, interval_fn: IntervalFn, job: JobFn, run_immediately: bool) -> None:
        if run_immediately:
            await self._run_once(name, job)
        while True:
            delay = interval_fn(self.clock.now())
            await self.clock.sleep(delay)
            await self._run_once(name, job)

    async def _run_once(self, name: str, job: JobFn) -> None:
        try:
            await job()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("scheduled_job_failed", job=name, error=str(e))

    def cancel(self, name: str) -> bool:
        task = self._jobs.pop(name, None)
        if task is None:
            return False
        if not task.done():
            task.cancel()
        logger.debug("job_cancelled", job=name)
        return True

    def cancel_prefix(self, prefix: str) -> list[str]:
        names = [n for n in self._jobs if n.startswith(prefix)]
        for name in names:
            self.cancel(name)
        return names

    def is_scheduled(self, name: str) -> bool:
        task = self._jobs.get(name)
        return task is not None and not task.done()

    def job_names(self) -> list[str]:
        return sorted(n for n, t in self._jobs.items() if not t.done())

    async def shutdown(self) -> None:
        tasks = list(self._jobs.values())
        self._jobs.clear()
        for task in tasks:
            if not task.done():
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("scheduler_stopped", jobs=len(tasks))
