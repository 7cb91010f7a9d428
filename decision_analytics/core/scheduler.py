"""
Periodic job scheduling.

Retention cleanup and graph rebuilds run as explicit periodic jobs driven by
an injectable clock, so callers (and tests) decide when time advances.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class Clock:
    """Source of the current time."""

    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    """Wall clock."""

    def now(self) -> datetime:
        return datetime.now()


class ManualClock(Clock):
    """Virtual clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2024, 1, 1)

    def now(self) -> datetime:
        return self._now

    def advance(self, delta: timedelta) -> datetime:
        if delta < timedelta(0):
            raise ValueError("Cannot move a clock backwards")
        self._now += delta
        return self._now

    def set(self, moment: datetime) -> None:
        self._now = moment


@dataclass
class PeriodicJob:
    """A named action that runs every ``interval``."""
    name: str
    interval: timedelta
    action: Callable[[datetime], None]
    next_run: datetime
    cancelled: bool = False
    run_count: int = 0


class JobScheduler:
    """Cooperative scheduler for periodic jobs.

    Nothing runs on its own: ``run_pending`` executes every due job on the
    caller's thread, so jobs never interleave with ingestion calls.
    """

    def __init__(self, clock: Clock):
        self.clock = clock
        self._jobs: Dict[str, PeriodicJob] = {}

    def schedule(self, name: str, interval: timedelta, action: Callable[[datetime], None]) -> PeriodicJob:
        """Register (or replace) a job whose first run is one interval from now."""
        if interval <= timedelta(0):
            raise ValueError("interval must be positive")
        job = PeriodicJob(
            name=name,
            interval=interval,
            action=action,
            next_run=self.clock.now() + interval,
        )
        self._jobs[name] = job
        return job

    def cancel(self, name: str) -> None:
        job = self._jobs.get(name)
        if job is not None:
            job.cancelled = True

    def cancel_all(self) -> None:
        for job in self._jobs.values():
            job.cancelled = True

    def restart(self, name: str) -> None:
        """Re-arm a cancelled job one interval from now."""
        job = self._jobs[name]
        job.cancelled = False
        job.next_run = self.clock.now() + job.interval

    def jobs(self) -> List[PeriodicJob]:
        return list(self._jobs.values())

    def run_pending(self) -> List[str]:
        """Run every job whose next run time has passed.

        A job that fell several intervals behind runs once and is re-armed
        relative to the current time.

        Returns:
            Names of the jobs that ran
        """
        now = self.clock.now()
        ran = []
        for job in list(self._jobs.values()):
            if job.cancelled or job.next_run > now:
                continue
            logger.debug("Running periodic job %s", job.name)
            job.action(now)
            job.run_count += 1
            job.next_run = now + job.interval
            ran.append(job.name)
        return ran
