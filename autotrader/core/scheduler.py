"""Periodic task scheduling.

Each scheduled job runs in its own asyncio task. A run is awaited before the
next sleep starts, so two runs of the same job never overlap. Exceptions
from a run are logged and do not stop the schedule.
"""
import asyncio
import itertools
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)

JobFn = Callable[[], Awaitable[None]]

_handle_ids = itertools.count(1)


@dataclass
class ScheduleHandle:
    """Reference to a scheduled job."""
    name: str
    interval: float
    id: int = field(default_factory=lambda: next(_handle_ids))
    task: Optional[asyncio.Task] = None
    cancelled: bool = False

    @property
    def is_active(self) -> bool:
        if self.cancelled:
            return False
        return self.task is None or not self.task.done()


class Scheduler(ABC):
    """Runs coroutines at fixed intervals."""

    @abstractmethod
    def schedule(
        self,
        interval: float,
        job: JobFn,
        name: str,
        run_immediately: bool = False,
    ) -> ScheduleHandle:
        ...

    @abstractmethod
    def cancel(self, handle: ScheduleHandle) -> None:
        ...

    @abstractmethod
    async def shutdown(self) -> None:
        ...


class AsyncioScheduler(Scheduler):
    """Scheduler backed by one asyncio task per job."""

    def __init__(self):
        self._handles: Dict[int, ScheduleHandle] = {}

    def schedule(
        self,
        interval: float,
        job: JobFn,
        name: str,
        run_immediately: bool = False,
    ) -> ScheduleHandle:
        if interval <= 0:
            raise ValueError("interval must be positive")

        handle = ScheduleHandle(name=name, interval=interval)
        handle.task = asyncio.create_task(
            self._run(handle, job, run_immediately), name=f"schedule:{name}"
        )
        self._handles[handle.id] = handle
        logger.debug("scheduler.scheduled", name=name, interval=interval)
        return handle

    async def _run(self, handle: ScheduleHandle, job: JobFn, run_immediately: bool):
        if not run_immediately:
            await asyncio.sleep(handle.interval)

        while not handle.cancelled:
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("scheduler.job_error", name=handle.name, error=str(e))
            await asyncio.sleep(handle.interval)

    def cancel(self, handle: ScheduleHandle) -> None:
        handle.cancelled = True
        if handle.task is not None and not handle.task.done():
            handle.task.cancel()
        self._handles.pop(handle.id, None)
        logger.debug("scheduler.cancelled", name=handle.name)

    @property
    def active_count(self) -> int:
        return sum(1 for h in self._handles.values() if h.is_active)

    async def shutdown(self) -> None:
        """Cancel every job and wait for the tasks to finish."""
        handles = list(self._handles.values())
        for handle in handles:
            self.cancel(handle)

        tasks = [h.task for h in handles if h.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("scheduler.shutdown", jobs=len(handles))
