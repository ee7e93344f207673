"""
Order Queue - bounded, rate-limited job processing for order execution

Handles:
- One durable job per order id (duplicates are rejected)
- A fixed pool of worker slots (at most `concurrency` orders in flight)
- A token bucket on job starts, independent of the slot limit
- Job-level retry with exponential backoff (1s, 2s, 4s by default)
- Retention: completed jobs purged after an hour / beyond 1000,
  failed jobs kept for a day
- Graceful shutdown: stop intake, let active jobs finish, requeue stragglers

The job store is the source of truth: claims are atomic there, so a job
never runs on two workers at once, and attempt counters survive restarts.
"""

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Optional
from loguru import logger
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .order_schemas import Job, utc_now
from .rate_limiter import TokenBucketLimiter
from .exceptions import InfrastructureError, QueueClosedError
from .retry_policy import should_retry_job


JobHandler = Callable[[Job], Awaitable[Any]]


@dataclass
class QueueConfig:
    """Configuration for the order queue"""

    # Worker pool
    concurrency: int = 10                     # Orders executing at once
    rate_limit_max: int = 100                 # Job starts per rate_limit_period
    rate_limit_period: float = 60.0

    # Job-level retry
    max_retries: int = 3                      # Attempts = max_retries + 1
    backoff_delay_seconds: float = 1.0        # Doubles per attempt
    max_backoff_seconds: float = 300.0        # Ceiling for the doubled delay

    # Retention
    completed_max_age_seconds: float = 3600.0
    completed_max_count: int = 1000
    failed_max_age_seconds: float = 86400.0
    cleanup_interval_seconds: float = 60.0

    # Lifecycle
    poll_interval_seconds: float = 0.5        # Upper bound on idle wait
    shutdown_timeout_seconds: float = 30.0
    recover_stalled_on_start: bool = True


class OrderQueue:
    """
    Persistent work queue that runs the order pipeline once per order

    Jobs are dispatched to worker tasks; a failed job is retried with
    backoff until its attempts are exhausted, then marked failed.
    """

    def __init__(self, job_store, handler: JobHandler, config: Optional[QueueConfig] = None,
                 limiter: Optional[TokenBucketLimiter] = None):
        self.job_store = job_store
        self.handler = handler
        self.config = config or QueueConfig()
        self.limiter = limiter or TokenBucketLimiter(self.config.rate_limit_max,
                                                     self.config.rate_limit_period)

        self._slots = asyncio.Semaphore(self.config.concurrency)
        self._wakeup = asyncio.Event()
        self._active: Dict[str, asyncio.Task] = {}
        self._dispatcher: Optional[asyncio.Task] = None
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False
        self._closing = False

        # Performance tracking
        self.jobs_started = 0
        self.jobs_completed = 0
        self.jobs_failed = 0
        self.jobs_retried = 0

    @property
    def max_attempts(self) -> int:
        return self.config.max_retries + 1

    @property
    def running(self) -> bool:
        return self._running

    @property
    def accepting(self) -> bool:
        """False once close() has begun"""
        return not self._closing

    async def start(self) -> None:
        """Start dispatching jobs and the retention sweep"""
        if self._running:
            return
        if self._closing:
            raise QueueClosedError("Order queue was closed")

        if self.config.recover_stalled_on_start:
            self.job_store.recover_stalled()

        self._running = True
        self._dispatcher = asyncio.create_task(self._dispatch_loop())

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.purge_finished,
            IntervalTrigger(seconds=self.config.cleanup_interval_seconds),
            id="purge-finished-jobs",
            max_instances=1,
            coalesce=True
        )
        self._scheduler.start()

        logger.info(f"Order queue started (concurrency={self.config.concurrency}, "
                    f"rate={self.config.rate_limit_max}/{self.config.rate_limit_period:.0f}s, "
                    f"attempts={self.max_attempts})")

    async def enqueue(self, order_id: str, session=None) -> bool:
        """
        Queue an order for execution

        Args:
            order_id: Order to run
            session: Store transaction to add the job in, e.g. the one creating the order

        Returns:
            False if the order already has a job (queued, running or finished)

        Raises:
            QueueClosedError: the queue is shutting down
        """
        if self._closing:
            raise QueueClosedError("Order queue is closed; not accepting new jobs")

        added = self.job_store.add(order_id, max_attempts=self.max_attempts,
                                   backoff_delay=self.config.backoff_delay_seconds,
                                   session=session)
        if added:
            logger.info(f"Order {order_id} added to queue")
            self._wakeup.set()
        else:
            logger.warning(f"Order {order_id} already queued; duplicate ignored")
        return added

    async def get_metrics(self) -> Dict[str, int]:
        """Job counts by state"""
        counts = self.job_store.counts()
        counts['total'] = sum(counts.values())
        return counts

    async def wait_until_idle(self, timeout: Optional[float] = None,
                              poll_interval: float = 0.05) -> bool:
        """Wait until no job is waiting, delayed or active"""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None
        while True:
            counts = self.job_store.counts()
            if counts['waiting'] + counts['delayed'] + counts['active'] == 0 and not self._active:
                return True
            if deadline is not None and loop.time() >= deadline:
                return False
            await asyncio.sleep(poll_interval)

    async def purge_finished(self) -> int:
        """Apply retention to completed and failed jobs"""
        try:
            return self.job_store.purge(
                completed_max_age=self.config.completed_max_age_seconds,
                completed_max_count=self.config.completed_max_count,
                failed_max_age=self.config.failed_max_age_seconds
            )
        except InfrastructureError:
            logger.exception("Job retention sweep failed")
            return 0

    async def close(self) -> None:
        """
        Stop taking jobs and drain

        Active jobs get `shutdown_timeout_seconds` to finish; the rest are
        cancelled and put back in the queue without using up an attempt.
        """
        if self._closing:
            return
        self._closing = True
        self._running = False
        self._wakeup.set()
        logger.info("Closing order queue...")

        if self._dispatcher is not None:
            self._dispatcher.cancel()
            await asyncio.gather(self._dispatcher, return_exceptions=True)

        active = list(self._active.values())
        if active:
            logger.info(f"Waiting for {len(active)} active jobs to finish")
            _, pending = await asyncio.wait(active, timeout=self.config.shutdown_timeout_seconds)
            if pending:
                logger.warning(f"Requeueing {len(pending)} jobs still running at shutdown")
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)

        logger.info(f"Order queue closed: {self.jobs_completed} completed, "
                    f"{self.jobs_failed} failed, {self.jobs_retried} retried")

    async def _dispatch_loop(self) -> None:
        while self._running:
            await self._slots.acquire()
            try:
                job = await self._next_job()
            except BaseException:
                self._slots.release()
                raise

            if job is None:
                self._slots.release()
                break

            task = asyncio.create_task(self._run_job(job))
            self._active[job.job_id] = task
            task.add_done_callback(lambda _, job_id=job.job_id: self._on_job_done(job_id))

    async def _next_job(self) -> Optional[Job]:
        """Wait for a ready job and a rate token, then claim the job"""
        while self._running:
            self._wakeup.clear()
            try:
                if self.job_store.has_ready():
                    await self.limiter.acquire()
                    if not self._running:
                        return None
                    job = self.job_store.claim_next()
                    if job is not None:
                        return job
                    # Another worker won the claim
                    self.limiter.refund()
                    continue
                timeout = self._idle_timeout()
            except InfrastructureError:
                logger.exception("Job store unavailable; dispatcher backing off")
                timeout = self.config.poll_interval_seconds

            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout)
            except asyncio.TimeoutError:
                pass
        return None

    def _idle_timeout(self) -> float:
        timeout = self.config.poll_interval_seconds
        next_at = self.job_store.next_available_at()
        if next_at is not None:
            until_ready = (next_at - utc_now()) / timedelta(seconds=1)
            timeout = min(timeout, max(until_ready, 0.0))
        return timeout

    async def _run_job(self, job: Job) -> None:
        self.jobs_started += 1
        logger.info(f"Processing order {job.order_id} (job attempt "
                    f"{job.attempts_made}/{job.max_attempts})")
        try:
            await self.handler(job)

        except asyncio.CancelledError:
            logger.warning(f"Job {job.job_id} interrupted; returning it to the queue")
            self._finalize(self.job_store.release, job.job_id)
            raise

        except Exception as e:
            error = str(e) or e.__class__.__name__
            if isinstance(e, InfrastructureError) or should_retry_job(e, job.attempts_made,
                                                                      job.max_attempts):
                delay = job.next_backoff(self.config.max_backoff_seconds)
                logger.warning(f"Job {job.job_id} failed for order {job.order_id}: {error}; "
                               f"retrying in {delay:.1f}s")
                if self._finalize(self.job_store.retry_later, job.job_id, error, delay):
                    self.jobs_retried += 1
                    self._wakeup.set()
            else:
                logger.error(f"Job {job.job_id} failed for order {job.order_id}: {error}")
                self._finalize(self.job_store.fail, job.job_id, error)
                self.jobs_failed += 1

        else:
            self._finalize(self.job_store.complete, job.job_id)
            self.jobs_completed += 1
            logger.info(f"Job {job.job_id} completed for order {job.order_id}")

    def _finalize(self, operation: Callable[..., bool], *args: Any) -> bool:
        """Record a job outcome; on store failure the job stays active for recovery"""
        try:
            return operation(*args)
        except InfrastructureError:
            logger.exception(f"Could not record outcome for job {args[0]}; "
                             "it stays active until recovered")
            return False

    def _on_job_done(self, job_id: str) -> None:
        self._active.pop(job_id, None)
        self._slots.release()
