"""Recurring background jobs on the running event loop."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import structlog

logger = structlog.get_logger(__name__)

JobFn = Callable[[], Awaitable[Any]]


@dataclass
class ScheduledJob:
    """One recurring job and its run bookkeeping."""

    job_id: str
    fn: JobFn
    interval: float
    description: str = ""
    run_immediately: bool = False
    last_run: float | None = None
    run_count: int = 0
    error_count: int = 0
    last_error: str | None = None
    is_running: bool = False
    task: asyncio.Task[None] | None = field(default=None, repr=False)


class TaskScheduler:
    """Runs each job every ``interval`` seconds in its own task.

    A job never overlaps with itself: a tick (or :meth:`run_now`) that finds
    the job still running is skipped. Job errors are logged and counted, never
    raised. Requests never wait on scheduled work.
    """

    def __init__(self) -> None:
        self._jobs: dict[str, ScheduledJob] = {}
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def schedule(
        self,
        job_id: str,
        fn: JobFn,
        interval: float,
        description: str = "",
        run_immediately: bool = False,
    ) -> ScheduledJob:
        """Register (or replace) job *job_id*; starts it at once if the scheduler runs."""
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.unschedule(job_id)
        job = ScheduledJob(job_id, fn, interval, description, run_immediately)
        self._jobs[job_id] = job
        logger.info("scheduler.job_scheduled", job=job_id, interval_s=interval, description=description)
        if self._running:
            job.task = asyncio.create_task(self._loop(job), name=f"job:{job_id}")
        return job

    def unschedule(self, job_id: str) -> bool:
        job = self._jobs.pop(job_id, None)
        if job is None:
            return False
        if job.task is not None:
            job.task.cancel()
        logger.info("scheduler.job_unscheduled", job=job_id)
        return True

    def start(self) -> None:
        """Start every registered job; must be called from inside the event loop."""
        if self._running:
            return
        self._running = True
        for job in self._jobs.values():
            job.task = asyncio.create_task(self._loop(job), name=f"job:{job.job_id}")
        logger.info("scheduler.started", jobs=list(self._jobs))

    async def stop(self) -> None:
        """Cancel all job tasks and wait for them to unwind."""
        if not self._running:
            return
        self._running = False
        tasks = [job.task for job in self._jobs.values() if job.task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for job in self._jobs.values():
            job.task = None
        logger.info("scheduler.stopped")

    async def run_now(self, job_id: str) -> bool:
        """Run *job_id* immediately, outside its timer.

        Returns:
            ``False`` if the job is unknown or already running.

        Raises:
            Nothing; job errors are recorded on the job.
        """
        job = self._jobs.get(job_id)
        if job is None or job.is_running:
            return False
        await self._run(job)
        return True

    def status(self) -> list[dict[str, Any]]:
        """Per-job bookkeeping, for diagnostics endpoints."""
        return [
            {
                "id": job.job_id,
                "description": job.description,
                "interval_s": job.interval,
                "last_run": job.last_run,
                "run_count": job.run_count,
                "error_count": job.error_count,
                "last_error": job.last_error,
                "is_running": job.is_running,
            }
            for job in self._jobs.values()
        ]

    async def _loop(self, job: ScheduledJob) -> None:
        if job.run_immediately:
            await self._run(job)
        while True:
            await asyncio.sleep(job.interval)
            if not job.is_running:
                await self._run(job)

    async def _run(self, job: ScheduledJob) -> None:
        job.is_running = True
        try:
            await job.fn()
            job.run_count += 1
        except Exception as exc:  # noqa: BLE001
            job.error_count += 1
            job.last_error = str(exc)
            logger.error("scheduler.job_failed", job=job.job_id, error=str(exc))
        finally:
            job.last_run = time.time()
            job.is_running = False
