"""
Job scheduler
One-shot and periodic asyncio jobs keyed by (job group, job name), with duplicate registration rejected
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import structlog

from ..cache import CacheError, CacheService
from ..models.sync_models import UserContext

logger = structlog.get_logger(__name__)

JobHandler = Callable[[UserContext, Dict[str, Any]], Awaitable[Any]]


class JobSchedulingError(Exception):
    """Job could not be scheduled"""
    pass


@dataclass
class ScheduledJob:
    name: str
    group: str
    user_context: UserContext
    parameters: Dict[str, Any] = field(default_factory=dict)
    periodic: bool = False
    scheduled_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    task: Optional[asyncio.Task] = None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.group, self.name)


class JobScheduler:
    """
    In-process asyncio job scheduler

    The registry entry is taken before the first await, so two callers in
    this process cannot both register the same key. When a CacheService is
    given, a Redis SET NX claim extends that guarantee across processes; the
    claim TTL reclaims keys left behind by a crashed process.
    """

    def __init__(self, cache_service: Optional[CacheService] = None, claim_ttl_seconds: int = 3600):
        self.cache_service = cache_service
        self.claim_ttl_seconds = claim_ttl_seconds
        self._jobs: Dict[Tuple[str, str], ScheduledJob] = {}

    @staticmethod
    def _claim_key(job_group: str, job_name: str) -> str:
        return f"job:{job_group}:{job_name}"

    def does_job_exist(self, job_name: str, job_group: str) -> bool:
        return (job_group, job_name) in self._jobs

    async def is_job_pending(self, job_name: str, job_group: str) -> bool:
        """Pending here or claimed by another process"""
        if self.does_job_exist(job_name, job_group):
            return True
        if self.cache_service is None:
            return False
        return await self.cache_service.exists(self._claim_key(job_group, job_name))

    def get_group_jobs(self, job_group: str) -> List[ScheduledJob]:
        return [job for (group, _), job in self._jobs.items() if group == job_group]

    async def schedule_immediate(self, job_name: str, job_group: str, handler: JobHandler,
                                 user_context: UserContext,
                                 parameters: Optional[Dict[str, Any]] = None) -> bool:
        """
        Run handler once, now, under user_context

        Returns:
            bool: False when a job with the same key is already pending
        """
        if not callable(handler):
            raise JobSchedulingError(f"Handler for {job_group}/{job_name} is not callable")
        job = ScheduledJob(job_name, job_group, user_context, dict(parameters or {}))
        if job.key in self._jobs:
            logger.debug("Job already scheduled", job_name=job_name, job_group=job_group)
            return False
        self._jobs[job.key] = job

        if not await self._claim(job):
            self._jobs.pop(job.key, None)
            logger.debug("Job claimed by another process", job_name=job_name, job_group=job_group)
            return False

        job.task = asyncio.create_task(self._run_once(job, handler))
        logger.info("Job scheduled", job_name=job_name, job_group=job_group, user_id=user_context.user_id)
        return True

    async def schedule_periodic(self, job_name: str, job_group: str, handler: JobHandler,
                                user_context: UserContext,
                                interval_provider: Callable[[], float],
                                parameters: Optional[Dict[str, Any]] = None) -> bool:
        """
        Run handler every interval_provider() seconds

        The interval is re-read before each pass; a value <= 0 ends the loop
        and unregisters the job.
        """
        if not callable(handler):
            raise JobSchedulingError(f"Handler for {job_group}/{job_name} is not callable")
        if interval_provider() <= 0:
            logger.info("Periodic job disabled", job_name=job_name, job_group=job_group)
            return False

        job = ScheduledJob(job_name, job_group, user_context, dict(parameters or {}), periodic=True)
        if job.key in self._jobs:
            return False
        self._jobs[job.key] = job
        job.task = asyncio.create_task(self._run_periodic(job, handler, interval_provider))
        logger.info("Periodic job scheduled", job_name=job_name, job_group=job_group)
        return True

    async def remove_group_jobs(self, job_group: str) -> int:
        """Cancel every job in a group except the caller's own task"""
        current = asyncio.current_task()
        removed = []
        for job in self.get_group_jobs(job_group):
            if job.task is not None and job.task is current:
                continue
            self._jobs.pop(job.key, None)
            if job.task is not None and not job.task.done():
                job.task.cancel()
            removed.append(job)

        tasks = [job.task for job in removed if job.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for job in removed:
            await self._release(job)

        if removed:
            logger.info("Group jobs removed", job_group=job_group, count=len(removed))
        return len(removed)

    async def shutdown(self) -> None:
        jobs = list(self._jobs.values())
        for job in jobs:
            if job.task is not None and not job.task.done():
                job.task.cancel()
        tasks = [job.task for job in jobs if job.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._jobs.clear()
        logger.info("Job scheduler stopped")

    async def _claim(self, job: ScheduledJob) -> bool:
        if self.cache_service is None:
            return True
        try:
            return await self.cache_service.set_if_absent(
                self._claim_key(job.group, job.name),
                {"user_id": job.user_context.user_id, "scheduled_at": job.scheduled_at.isoformat()},
                self.claim_ttl_seconds,
            )
        except CacheError as e:
            logger.warning("Job claim unavailable, relying on in-process registry",
                           job_name=job.name, job_group=job.group, error=str(e))
            return True

    async def _release(self, job: ScheduledJob) -> None:
        if self.cache_service is not None and not job.periodic:
            await self.cache_service.delete(self._claim_key(job.group, job.name))

    def _unregister(self, job: ScheduledJob) -> None:
        if self._jobs.get(job.key) is job:
            del self._jobs[job.key]

    async def _run_once(self, job: ScheduledJob, handler: JobHandler) -> None:
        try:
            await handler(job.user_context, job.parameters)
            logger.info("Job completed", job_name=job.name, job_group=job.group)
        except asyncio.CancelledError:
            logger.info("Job cancelled", job_name=job.name, job_group=job.group)
            raise
        except Exception as e:
            logger.error("Job failed", job_name=job.name, job_group=job.group, error=str(e))
        finally:
            self._unregister(job)
            await self._release(job)

    async def _run_periodic(self, job: ScheduledJob, handler: JobHandler,
                            interval_provider: Callable[[], float]) -> None:
        try:
            while True:
                interval = interval_provider()
                if interval <= 0:
                    logger.info("Periodic job unscheduled", job_name=job.name, job_group=job.group)
                    break
                await asyncio.sleep(interval)
                try:
                    await handler(job.user_context, job.parameters)
                except Exception as e:
                    logger.error("Periodic job pass failed", job_name=job.name,
                                 job_group=job.group, error=str(e))
        except asyncio.CancelledError:
            logger.info("Periodic job cancelled", job_name=job.name, job_group=job.group)
            raise
        finally:
            self._unregister(job)
