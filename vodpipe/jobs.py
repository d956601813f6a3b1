"""
Job queue and worker pool for VodPipe
"""

import asyncio
import logging
import uuid
import weakref
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from .config import JobsConfig
from .models import utcnow

logger = logging.getLogger(__name__)

PROCESS_VIDEO = "process-video"
REGENERATE_QUALITY = "regenerate-quality"


class JobStatus(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Job:
    """A unit of queued background work."""
    id: str
    name: str
    payload: Dict[str, Any]
    status: JobStatus = JobStatus.QUEUED
    attempts: int = 0
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def exclusive_key(self) -> str:
        """Jobs sharing this key never run at the same time."""
        return str(self.payload.get("video_id") or self.id)


@dataclass
class RetryPolicy:
    """Exponential backoff for jobs that fail with a retryable error."""
    max_attempts: int = 3
    base_delay: float = 5.0
    max_delay: float = 300.0
    backoff_factor: float = 2.0

    @classmethod
    def from_config(cls, config: JobsConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
            backoff_factor=config.retry_backoff_factor,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay before the attempt following `attempt` (1-indexed)."""
        return min(self.max_delay, self.base_delay * (self.backoff_factor ** max(0, attempt - 1)))

    def should_retry(self, attempt: int, error: BaseException) -> bool:
        return attempt < self.max_attempts and bool(getattr(error, "retryable", False))


JobHandler = Callable[[Job], Awaitable[None]]
# Called before a failed job is queued again; returning False drops the retry
RetryHook = Callable[[Job, BaseException], Awaitable[bool]]


class JobStats:
    """Statistics for job processing."""

    def __init__(self):
        self.total_jobs_processed: int = 0
        self.successful_jobs: int = 0
        self.failed_jobs: int = 0
        self.retried_jobs: int = 0
        self.start_time: datetime = utcnow()

    def record_job_complete(self, success: bool) -> None:
        self.total_jobs_processed += 1
        if success:
            self.successful_jobs += 1
        else:
            self.failed_jobs += 1

    @property
    def uptime_seconds(self) -> float:
        return (utcnow() - self.start_time).total_seconds()


class JobQueue:
    """
    asyncio queue drained by a bounded pool of worker coroutines.

    Each job is delivered to exactly one worker; jobs with the same
    `exclusive_key` additionally serialize on a shared lock.
    """

    def __init__(self, max_workers: int = 2, retry_policy: Optional[RetryPolicy] = None):
        self.max_workers = max(1, max_workers)
        self.retry_policy = retry_policy or RetryPolicy()
        self.jobs: Dict[str, Job] = {}
        self.queue: asyncio.Queue = asyncio.Queue()
        self.active_jobs: Set[str] = set()
        self.stats = JobStats()
        self._handlers: Dict[str, JobHandler] = {}
        self._retry_hooks: Dict[str, RetryHook] = {}
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._retry_tasks: Set[asyncio.Task] = set()
        self._outstanding = 0  # jobs queued, running or awaiting retry
        self._workers: List[asyncio.Task] = []
        self._running = False

    @classmethod
    def from_config(cls, config: JobsConfig) -> "JobQueue":
        return cls(max_workers=config.max_workers, retry_policy=RetryPolicy.from_config(config))

    def register_handler(self, name: str, handler: JobHandler, retry_hook: Optional[RetryHook] = None) -> None:
        self._handlers[name] = handler
        if retry_hook:
            self._retry_hooks[name] = retry_hook

    async def start(self) -> None:
        """Start the worker pool."""
        if self._running:
            return

        self._running = True
        for i in range(self.max_workers):
            self._workers.append(asyncio.create_task(self._worker(i)))

        logger.info(f"[Jobs] Started {self.max_workers} job workers")

    async def stop(self) -> None:
        """Stop workers and drop pending retries. Running jobs are cancelled."""
        self._running = False

        for task in list(self._retry_tasks):
            task.cancel()
        for worker in self._workers:
            worker.cancel()

        await asyncio.gather(*self._workers, *self._retry_tasks, return_exceptions=True)
        self._workers.clear()
        self._retry_tasks.clear()

        logger.info("[Jobs] Job queue stopped")

    async def enqueue(self, name: str, payload: Dict[str, Any]) -> str:
        """Queue a job and return its id."""
        if name not in self._handlers:
            raise ValueError(f"No handler registered for job '{name}'")

        job = Job(id=uuid.uuid4().hex, name=name, payload=dict(payload))
        self.jobs[job.id] = job
        self._outstanding += 1
        await self.queue.put(job.id)

        logger.info(f"[Jobs] Queued {name} job {job.id} ({job.exclusive_key})")
        return job.id

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def _worker(self, worker_id: int) -> None:
        """Worker coroutine that processes jobs from the queue."""
        logger.debug(f"[Jobs] Worker {worker_id} started")

        while self._running:
            try:
                job_id = await asyncio.wait_for(self.queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue

            job = self.jobs.get(job_id)
            if job is None:
                self.queue.task_done()
                continue

            self.active_jobs.add(job_id)
            try:
                await self._run_job(job)
            finally:
                self.active_jobs.discard(job_id)
                self.queue.task_done()

        logger.debug(f"[Jobs] Worker {worker_id} stopped")

    async def _run_job(self, job: Job) -> None:
        handler = self._handlers[job.name]
        job.attempts += 1
        job.status = JobStatus.ACTIVE
        job.started_at = utcnow()

        try:
            async with self._lock_for(job.exclusive_key):
                await handler(job)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            job.error_message = str(e)
            if await self._maybe_retry(job, e):
                return
            self._finish(job, JobStatus.FAILED)
            logger.error(f"[Jobs] {job.name} job {job.id} failed after {job.attempts} attempt(s): {e}")
            return

        job.error_message = None
        self._finish(job, JobStatus.COMPLETED)
        logger.info(f"[Jobs] {job.name} job {job.id} completed")

    def _finish(self, job: Job, status: JobStatus) -> None:
        """Record a terminal outcome and forget the job."""
        job.status = status
        job.completed_at = utcnow()
        self.stats.record_job_complete(success=status == JobStatus.COMPLETED)
        self._outstanding -= 1
        self.jobs.pop(job.id, None)

    async def _maybe_retry(self, job: Job, error: Exception) -> bool:
        if not self._running or not self.retry_policy.should_retry(job.attempts, error):
            return False

        hook = self._retry_hooks.get(job.name)
        if hook:
            try:
                if not await hook(job, error):
                    logger.info(f"[Jobs] Retry of job {job.id} declined")
                    return False
            except Exception as e:
                logger.warning(f"[Jobs] Retry hook for job {job.id} failed: {e}")
                return False

        delay = self.retry_policy.delay_for(job.attempts)
        job.status = JobStatus.RETRYING
        self.stats.retried_jobs += 1
        logger.warning(
            f"[Jobs] {job.name} job {job.id} failed (attempt {job.attempts}/"
            f"{self.retry_policy.max_attempts}), retrying in {delay:.1f}s: {error}"
        )

        task = asyncio.create_task(self._requeue_after(job, delay))
        self._retry_tasks.add(task)
        task.add_done_callback(self._retry_tasks.discard)
        return True

    async def _requeue_after(self, job: Job, delay: float) -> None:
        await asyncio.sleep(delay)
        job.status = JobStatus.QUEUED
        await self.queue.put(job.id)

    async def wait_idle(self, poll_interval: float = 0.01) -> None:
        """Wait until nothing is queued, running or waiting to be retried."""
        while self._outstanding:
            await asyncio.sleep(poll_interval)

    def get_job(self, job_id: str) -> Optional[Job]:
        """A job that is queued, running or waiting to be retried."""
        return self.jobs.get(job_id)

    def get_queue_length(self) -> int:
        return self.queue.qsize()

    def get_active_count(self) -> int:
        return len(self.active_jobs)
