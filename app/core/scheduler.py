"""
APScheduler wrapper for named recurring fleet jobs
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from core.errors import DuplicateJobError, NotFoundError, ValidationError
from core.models import JobResult, JobState, JobStatus, TriggerOutcome, TriggerResult

logger = logging.getLogger(__name__)

JobHandler = Callable[[], Awaitable[Any]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_trigger(schedule: str, tz: str = "UTC") -> CronTrigger:
    """Parse a standard 5-field cron expression."""
    try:
        return CronTrigger.from_crontab(schedule, timezone=tz)
    except (ValueError, LookupError) as e:
        raise ValidationError(f"Invalid schedule '{schedule}' ({tz}): {e}", field="schedule") from e


@dataclass
class JobDefinition:
    name: str
    schedule: str
    handler: JobHandler
    timezone: str = "UTC"
    trigger: Optional[CronTrigger] = None
    running: bool = False
    last_run_at: Optional[datetime] = None
    last_result: Optional[JobResult] = None
    run_count: int = 0
    skipped_count: int = 0


class JobScheduler:
    """
    Owns a table of named jobs and runs them on cron schedules.

    Every run, scheduled or manual, goes through the same per-job guard: a
    job that is already running is skipped, never queued or run twice.
    Different jobs never block each other.
    """

    def __init__(
        self,
        scheduler: Optional[AsyncIOScheduler] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.scheduler = scheduler if scheduler is not None else AsyncIOScheduler(timezone="UTC")
        self.clock = clock
        self._jobs: Dict[str, JobDefinition] = {}
        self._started = False
        self._inflight: set = set()

    def register(
        self,
        name: str,
        schedule: str,
        handler: JobHandler,
        timezone: str = "UTC",
    ) -> JobDefinition:
        """Add a job definition. Raises DuplicateJobError for a known name."""
        name = str(getattr(name, "value", name))
        if name in self._jobs:
            raise DuplicateJobError(name)

        job = JobDefinition(
            name=name,
            schedule=schedule,
            handler=handler,
            timezone=timezone,
            trigger=build_trigger(schedule, timezone),
        )
        self._jobs[name] = job
        logger.info("Registered job %s: '%s' (%s)", name, schedule, timezone)

        if self._started:
            self._schedule(job)
        return job

    def _schedule(self, job: JobDefinition):
        self.scheduler.add_job(
            self._run_scheduled,
            job.trigger,
            args=[job.name],
            id=job.name,
            name=job.name,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )

    def job_names(self) -> List[str]:
        return list(self._jobs)

    def get_job(self, name: str) -> JobDefinition:
        job = self._jobs.get(name)
        if job is None:
            raise NotFoundError("job", name)
        return job

    @property
    def running(self) -> bool:
        return self._started

    def start(self):
        """Start emitting scheduled triggers"""
        if self._started:
            logger.warning("Scheduler already running")
            return

        existing_jobs = self.scheduler.get_jobs()
        if existing_jobs:
            logger.warning(
                "Clearing %s existing scheduler jobs before registration",
                len(existing_jobs),
            )
            self.scheduler.remove_all_jobs()

        for job in self._jobs.values():
            self._schedule(job)

        self.scheduler.start()
        self._started = True
        logger.info("Scheduler started with %s jobs", len(self._jobs))

    def stop(self):
        """
        Cancel all future scheduled triggers.

        In-flight handlers are not interrupted; use wait_idle() to join them.
        Manual trigger() keeps working after stop.
        """
        if not self._started:
            logger.info("Scheduler already stopped")
            return

        self._started = False
        try:
            self.scheduler.remove_all_jobs()
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
        except Exception as e:
            logger.exception("Scheduler shutdown failed: %s", e)

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait for in-flight job runs. Returns True when none remain."""
        current = asyncio.current_task()
        pending = {task for task in self._inflight if task is not current}
        if not pending:
            return True
        _, still_pending = await asyncio.wait(pending, timeout=timeout)
        return not still_pending

    async def trigger(self, name: str) -> TriggerResult:
        """Run a job now, through the same guard as scheduled runs."""
        name = str(getattr(name, "value", name))
        if name not in self._jobs:
            logger.warning("Manual trigger for unknown job '%s'", name)
            return TriggerResult(name=name, outcome=TriggerOutcome.NOT_FOUND)
        logger.info("Manual trigger for job %s", name)
        return await self._execute(name)

    async def _run_scheduled(self, name: str):
        await self._execute(name)

    async def _execute(self, name: str) -> TriggerResult:
        job = self._jobs[name]

        # No await between the check and the set: atomic on the event loop.
        if job.running:
            job.skipped_count += 1
            logger.info("Job %s overlap skipped: previous run still in progress", name)
            return TriggerResult(name=name, outcome=TriggerOutcome.OVERLAP_SKIPPED)
        job.running = True

        task = asyncio.current_task()
        if task is not None:
            self._inflight.add(task)

        job.last_run_at = self.clock()
        started = time.monotonic()
        try:
            await job.handler()
            job.last_result = JobResult(
                success=True,
                finished_at=self.clock(),
                duration_seconds=time.monotonic() - started,
            )
            logger.info("Job %s completed in %.2fs", name, job.last_result.duration_seconds)
            return TriggerResult(name=name, outcome=TriggerOutcome.COMPLETED, result=job.last_result)
        except Exception as e:
            job.last_result = JobResult(
                success=False,
                finished_at=self.clock(),
                duration_seconds=time.monotonic() - started,
                error=f"{type(e).__name__}: {e}",
            )
            logger.exception("Job %s failed: %s", name, e)
            return TriggerResult(name=name, outcome=TriggerOutcome.FAILED, result=job.last_result)
        finally:
            job.run_count += 1
            job.running = False
            if task is not None:
                self._inflight.discard(task)

    def _next_run_at(self, name: str) -> Optional[datetime]:
        if not self._started:
            return None
        try:
            scheduled = self.scheduler.get_job(name)
        except Exception as e:
            logger.debug("Could not read next run for %s: %s", name, e)
            return None
        return getattr(scheduled, "next_run_time", None) if scheduled else None

    def status(self) -> List[JobStatus]:
        """Snapshot of every registered job"""
        snapshot = []
        for job in self._jobs.values():
            if job.running:
                state = JobState.RUNNING
            elif self._started:
                state = JobState.IDLE
            else:
                state = JobState.STOPPED
            snapshot.append(
                JobStatus(
                    name=job.name,
                    schedule=job.schedule,
                    state=state,
                    last_run_at=job.last_run_at,
                    last_result=job.last_result,
                    next_run_at=self._next_run_at(job.name),
                )
            )
        return snapshot
