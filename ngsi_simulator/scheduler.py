"""One asyncio task per schedule group; tracks live jobs and detects the end of a run."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from .elements import expand_all, group_by_schedule
from .events import EventNotifier, SimulationEvent
from .model import Attribute, Device, Element, ElementType, SimulationConfig
from .schedule import CronSchedule, is_once

LOGGER = logging.getLogger("ngsi_simulator.scheduler")

Dispatch = Callable[[ElementType, Element, List[Attribute]], Awaitable[None]]


class JobState(str, Enum):
    SCHEDULED = "scheduled"
    FIRING = "firing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass(eq=False)
class ScheduledJob:
    element_type: ElementType
    element: Element
    schedule: str
    attributes: List[Attribute]
    state: JobState = JobState.SCHEDULED
    fired: int = 0
    task: Optional["asyncio.Task[None]"] = field(default=None, repr=False)

    @property
    def once(self) -> bool:
        return is_once(self.schedule)

    def describe(self, config: SimulationConfig) -> Dict[str, Any]:
        described: Dict[str, Any] = {"schedule": self.schedule}
        if isinstance(self.element, Device):
            described.update(
                device_id=self.element.device_id,
                protocol=self.element.protocol,
                api_key=config.device_api_key(self.element),
            )
        else:
            described.update(entity_name=self.element.entity_name, entity_type=self.element.entity_type)
        described["attributes"] = [attribute.describe() for attribute in self.attributes]
        return described


class JobScheduler:
    """Owns the live job set of one run.

    ``on_end`` is called once, when the live set empties on its own after having
    held jobs. ``cancel_all`` never triggers it.
    """

    def __init__(
        self,
        dispatch: Dispatch,
        notifier: EventNotifier,
        *,
        once_delay: float = 0.5,
        clock: Callable[[], datetime] = datetime.now,
        on_end: Optional[Callable[[], None]] = None,
    ) -> None:
        self.dispatch = dispatch
        self.notifier = notifier
        self.once_delay = once_delay
        self.clock = clock
        self.on_end = on_end
        self.jobs: Set[ScheduledJob] = set()
        self.in_flight: Set["asyncio.Task[None]"] = set()
        self.cancelled = False
        self._had_jobs = False
        self._ended = False

    def schedule_all(self, config: SimulationConfig) -> List[ScheduledJob]:
        scheduled: List[ScheduledJob] = []
        for element_type, element in expand_all(config):
            for schedule, attributes in group_by_schedule(element).items():
                job = ScheduledJob(element_type, element, schedule, attributes)
                self.add(job)
                scheduled.append(job)
                self.notifier.emit(SimulationEvent.UPDATE_SCHEDULED, job.describe(config))
        LOGGER.info("Scheduled %d update jobs", len(scheduled))
        if not scheduled:
            LOGGER.warning("Nothing to schedule")
            self._finish()
        return scheduled

    def add(self, job: ScheduledJob) -> None:
        self.jobs.add(job)
        self._had_jobs = True
        job.task = asyncio.ensure_future(self._run(job))

    async def _run(self, job: ScheduledJob) -> None:
        try:
            if job.once:
                await asyncio.sleep(self.once_delay)
                dispatch = self._fire(job)
                job.state = JobState.COMPLETED
                await asyncio.wait({dispatch})
            else:
                await self._recur(job)
        except asyncio.CancelledError:
            job.state = JobState.CANCELLED
            raise
        finally:
            self._retire(job)

    async def _recur(self, job: ScheduledJob) -> None:
        cron = CronSchedule.parse(job.schedule)
        last: Optional[datetime] = None
        while True:
            now = self.clock()
            # timers may wake marginally early; never fire the same instant twice
            upcoming = cron.next_fire(max(now, last) if last else now)
            if upcoming is None:
                LOGGER.warning("Schedule '%s' never fires again", job.schedule)
                job.state = JobState.COMPLETED
                return
            await asyncio.sleep(max((upcoming - now).total_seconds(), 0.0))
            last = upcoming
            self._fire(job)
            job.state = JobState.SCHEDULED

    def _fire(self, job: ScheduledJob) -> "asyncio.Task[None]":
        job.state = JobState.FIRING
        job.fired += 1
        LOGGER.debug("Firing %s '%s' on '%s'", job.element_type.value, job.element.identifier, job.schedule)
        task = asyncio.ensure_future(self.dispatch(job.element_type, job.element, job.attributes))
        self.in_flight.add(task)
        task.add_done_callback(self._dispatch_done)
        return task

    def _dispatch_done(self, task: "asyncio.Task[None]") -> None:
        self.in_flight.discard(task)
        if not task.cancelled() and task.exception() is not None:
            LOGGER.error("Update dispatch failed", exc_info=task.exception())

    def _retire(self, job: ScheduledJob) -> None:
        self.jobs.discard(job)
        if not self.jobs and self._had_jobs and not self.cancelled:
            self._finish()

    def _finish(self) -> None:
        if self._ended:
            return
        self._ended = True
        LOGGER.info("Every update job has completed")
        if self.on_end is not None:
            self.on_end()

    def cancel_all(self) -> None:
        self.cancelled = True
        for job in list(self.jobs):
            job.state = JobState.CANCELLED
            if job.task is not None:
                job.task.cancel()
        self.jobs.clear()

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for every dispatch already started to finish.

        Returns False when dispatches are still in flight after ``timeout`` seconds.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self.in_flight:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                return False
            await asyncio.wait(set(self.in_flight), timeout=remaining)
        return True

    def abandon(self) -> int:
        """Cancel the dispatches still in flight; returns how many there were."""
        pending = list(self.in_flight)
        for task in pending:
            task.cancel()
        return len(pending)


__all__ = ["JobScheduler", "JobState", "ScheduledJob"]
