"""Durable delayed-job queue backed by Redis sorted sets."""
import asyncio
import json
import logging
import math
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import redis
import redis.asyncio as aioredis
from opentelemetry import trace

from config import (
    JOB_ATTEMPTS,
    JOB_BACKOFF_SECONDS,
    JOB_LEASE_SECONDS,
    WORKER_CONCURRENCY,
    WORKER_RATE_LIMIT_DURATION,
    WORKER_RATE_LIMIT_MAX,
)
from monitoring import job_duration_histogram, jobs_processed_counter

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 5
FAILED_JOB_RETENTION_SECONDS = 24 * 60 * 60
CLAIM_BATCH_SIZE = 50


@dataclass
class Job:
    """A unit of background work and its retry bookkeeping."""
    id: str
    name: str
    data: Dict[str, Any]
    priority: int = DEFAULT_PRIORITY
    attempts_made: int = 0
    max_attempts: int = JOB_ATTEMPTS
    backoff: float = JOB_BACKOFF_SECONDS
    run_at: float = 0.0
    failed_reason: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> "Job":
        return cls(**json.loads(raw))


JobHandler = Callable[[Job], Awaitable[Any]]


class JobQueue:
    """
    Redis-backed queue with delayed execution, unique job ids and retries.

    Layout:
    - queue:<name>:delayed  sorted set of job ids scored by run-at time
    - queue:<name>:jobs     hash of job id -> job JSON (waiting or in flight)
    - queue:<name>:active   sorted set of claimed job ids scored by lease deadline
    - queue:<name>:failed   hash of jobs that exhausted their attempts
    - queue:<name>:limiter  sliding window of recent job starts

    A job is claimed by removing it from the delayed set; only the caller whose
    ZREM succeeds owns it, so several workers can poll the same queue. The
    claim then holds a lease in the active set. A job whose lease runs out
    (its worker died) counts as a failed attempt and is made due again, so
    every job is delivered at least once.
    """

    def __init__(
        self,
        redis_client: aioredis.Redis,
        name: str,
        attempts: int = JOB_ATTEMPTS,
        backoff_seconds: float = JOB_BACKOFF_SECONDS,
        lease_seconds: float = JOB_LEASE_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize job queue.

        Args:
            redis_client: Async Redis client (decode_responses=True)
            name: Queue name used in the Redis keys
            attempts: Total attempts per job before it is marked failed
            backoff_seconds: First retry delay; doubles on each further retry
            lease_seconds: How long a claimed job may run before it is redelivered
            clock: Source of the current epoch time in seconds
        """
        self.redis = redis_client
        self.name = name
        self.attempts = attempts
        self.backoff_seconds = backoff_seconds
        self.lease_seconds = lease_seconds
        self.clock = clock
        self.delayed_key = f"queue:{name}:delayed"
        self.jobs_key = f"queue:{name}:jobs"
        self.active_key = f"queue:{name}:active"
        self.failed_key = f"queue:{name}:failed"
        self.limiter_key = f"queue:{name}:limiter"

    async def enqueue(
        self,
        job_name: str,
        data: Dict[str, Any],
        delay: float = 0.0,
        job_id: Optional[str] = None,
        priority: Optional[int] = None,
    ) -> str:
        """
        Add a job.

        Args:
            job_name: Job type, for logs
            data: JSON-serializable payload
            delay: Seconds to wait before the job becomes due
            job_id: Unique id; enqueueing an id that is still waiting or running is a no-op
            priority: Lower runs first among due jobs

        Returns:
            The job id
        """
        job = Job(
            id=job_id or uuid.uuid4().hex,
            name=job_name,
            data=data,
            priority=DEFAULT_PRIORITY if priority is None else priority,
            max_attempts=self.attempts,
            backoff=self.backoff_seconds,
            run_at=self.clock() + max(delay, 0.0),
        )

        created = await self.redis.hsetnx(self.jobs_key, job.id, job.to_json())
        if not created:
            if await self._is_tracked(job.id):
                logger.info("Job already queued, ignoring duplicate", extra={
                    "queue": self.name,
                    "job_id": job.id,
                })
                return job.id
            # Hash entry left behind without a schedule or lease
            logger.warning("Replacing stale job entry", extra={"queue": self.name, "job_id": job.id})
            await self.redis.hset(self.jobs_key, job.id, job.to_json())

        await self.redis.zadd(self.delayed_key, {job.id: job.run_at})
        logger.debug("Job queued", extra={
            "queue": self.name,
            "job_id": job.id,
            "job_name": job_name,
            "delay_seconds": delay,
        })
        return job.id

    async def get_job(self, job_id: str) -> Optional[Job]:
        raw = await self.redis.hget(self.jobs_key, job_id)
        return Job.from_json(raw) if raw else None

    async def remove(self, job_id: str) -> bool:
        """
        Remove a job that is still waiting.

        Returns:
            False when the job already ran, is running, or never existed
        """
        removed = await self.redis.zrem(self.delayed_key, job_id)
        if removed:
            await self.redis.hdel(self.jobs_key, job_id)
        return bool(removed)

    async def claim_due(self) -> Optional[Job]:
        """Claim the most urgent due job, or return None when nothing is due."""
        await self.requeue_stalled()

        job_ids = await self.redis.zrangebyscore(
            self.delayed_key, "-inf", self.clock(), start=0, num=CLAIM_BATCH_SIZE
        )
        if not job_ids:
            return None

        raw_jobs = await self.redis.hmget(self.jobs_key, job_ids)
        candidates = []
        for job_id, raw in zip(job_ids, raw_jobs):
            if raw is None:
                # Orphaned id left by an interrupted remove
                await self.redis.zrem(self.delayed_key, job_id)
                continue
            candidates.append(Job.from_json(raw))

        candidates.sort(key=lambda job: (job.priority, job.run_at))
        for job in candidates:
            if await self.redis.zrem(self.delayed_key, job.id):
                await self.redis.zadd(self.active_key, {job.id: self.clock() + self.lease_seconds})
                return job
        return None

    async def requeue_stalled(self) -> int:
        """
        Make jobs whose lease ran out due again.

        Each expiry uses up an attempt, so a job that keeps killing its worker
        ends up in the failed hash.

        Returns:
            Number of stalled jobs found
        """
        job_ids = await self.redis.zrangebyscore(self.active_key, "-inf", self.clock())
        stalled = 0
        for job_id in job_ids:
            # Another poller got there first
            if not await self.redis.zrem(self.active_key, job_id):
                continue
            raw = await self.redis.hget(self.jobs_key, job_id)
            if raw is None:
                continue

            job = Job.from_json(raw)
            job.attempts_made += 1
            will_retry = await self._reschedule_or_bury(job, "Job lease expired", 0.0)
            stalled += 1
            jobs_processed_counter.add(1, {"queue": self.name, "outcome": "stalled"})
            logger.warning("Job lease expired", extra={
                "queue": self.name,
                "job_id": job_id,
                "attempt": job.attempts_made,
                "will_retry": will_retry,
            })
        return stalled

    async def complete(self, job: Job) -> None:
        pipe = self.redis.pipeline()
        pipe.hdel(self.jobs_key, job.id)
        pipe.zrem(self.active_key, job.id)
        await pipe.execute()

    async def fail(self, job: Job, error: BaseException) -> bool:
        """
        Record a failed attempt.

        Returns:
            True if the job was re-scheduled, False if it exhausted its attempts
        """
        job.attempts_made += 1
        delay = job.backoff * (2 ** (job.attempts_made - 1))
        return await self._reschedule_or_bury(job, str(error), delay)

    async def _reschedule_or_bury(self, job: Job, reason: str, delay: float) -> bool:
        job.failed_reason = reason
        pipe = self.redis.pipeline()
        pipe.zrem(self.active_key, job.id)

        if job.attempts_made < job.max_attempts:
            job.run_at = self.clock() + delay
            pipe.hset(self.jobs_key, job.id, job.to_json())
            pipe.zadd(self.delayed_key, {job.id: job.run_at})
            await pipe.execute()
            return True

        pipe.hdel(self.jobs_key, job.id)
        pipe.hset(self.failed_key, job.id, job.to_json())
        pipe.expire(self.failed_key, FAILED_JOB_RETENTION_SECONDS)
        await pipe.execute()
        return False

    async def acquire_rate_slot(self, limit: int, window: float) -> bool:
        """
        Sliding-window rate limit on job starts, shared by every worker of this queue.

        Algorithm:
        1. Remove start times older than window
        2. Count starts in window
        3. Record this start
        4. Set TTL

        Returns:
            True if a job may start now
        """
        try:
            current_time = self.clock()
            member = f"{current_time}:{uuid.uuid4().hex}"

            pipe = self.redis.pipeline()
            pipe.zremrangebyscore(self.limiter_key, 0, current_time - window)
            pipe.zcard(self.limiter_key)
            pipe.zadd(self.limiter_key, {member: current_time})
            pipe.expire(self.limiter_key, math.ceil(window) + 1)
            results = await pipe.execute()

            if results[1] < limit:
                return True
            await self.redis.zrem(self.limiter_key, member)
            return False

        except redis.RedisError as e:
            logger.error(f"Redis rate limit error: {e}")
            # Fail open: the limiter only protects downstream systems
            return True

    async def _is_tracked(self, job_id: str) -> bool:
        pipe = self.redis.pipeline()
        pipe.zscore(self.delayed_key, job_id)
        pipe.zscore(self.active_key, job_id)
        delayed, active = await pipe.execute()
        return delayed is not None or active is not None


class JobWorker:
    """
    Polls a JobQueue and runs its handler with bounded concurrency.

    Handler exceptions trigger a retry per the queue's backoff policy; a
    handler that returns normally completes the job, whatever it returns.
    """

    def __init__(
        self,
        queue: JobQueue,
        handler: JobHandler,
        concurrency: int = WORKER_CONCURRENCY,
        max_jobs: int = WORKER_RATE_LIMIT_MAX,
        duration: float = WORKER_RATE_LIMIT_DURATION,
        poll_interval: float = 0.5,
    ):
        self.queue = queue
        self.handler = handler
        self.concurrency = concurrency
        self.max_jobs = max_jobs
        self.duration = duration
        self.poll_interval = poll_interval
        self.tracer = trace.get_tracer(__name__)
        self._semaphore = asyncio.Semaphore(concurrency)
        self._stopping = asyncio.Event()
        self._tasks: Set[asyncio.Task] = set()
        self._runner: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._runner = asyncio.create_task(self._run(), name=f"worker:{self.queue.name}")
        logger.info("Worker initialized", extra={
            "queue": self.queue.name,
            "concurrency": self.concurrency,
            "rate_limit": f"{self.max_jobs}/{self.duration}s",
        })

    async def close(self) -> None:
        """Stop polling and wait for in-flight jobs."""
        self._stopping.set()
        if self._runner is not None:
            await self._runner
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info("Worker closed", extra={"queue": self.queue.name})

    async def process(self, job: Job) -> Any:
        """Run the handler for one claimed job and settle it."""
        start = time.monotonic()
        with self.tracer.start_as_current_span(f"job.{self.queue.name}") as span:
            span.set_attribute("job.id", job.id)
            span.set_attribute("job.name", job.name)
            span.set_attribute("job.attempt", job.attempts_made + 1)

            try:
                result = await self.handler(job)
            except Exception as e:
                span.record_exception(e)
                will_retry = await self.queue.fail(job, e)
                jobs_processed_counter.add(1, {
                    "queue": self.queue.name,
                    "outcome": "retry" if will_retry else "failed",
                })
                logger.error("Job failed", exc_info=e, extra={
                    "queue": self.queue.name,
                    "job_id": job.id,
                    "attempt": job.attempts_made,
                    "will_retry": will_retry,
                })
                return None
            finally:
                job_duration_histogram.record(time.monotonic() - start, {"queue": self.queue.name})

            await self.queue.complete(job)
            jobs_processed_counter.add(1, {"queue": self.queue.name, "outcome": "completed"})
            logger.info("Job completed", extra={
                "queue": self.queue.name,
                "job_id": job.id,
                "result": result,
            })
            return result

    async def process_due(self) -> List[Any]:
        """Process every job that is due right now, one after another."""
        results = []
        while True:
            job = await self.queue.claim_due()
            if job is None:
                return results
            results.append(await self.process(job))

    async def _run(self) -> None:
        while not self._stopping.is_set():
            await self._semaphore.acquire()
            try:
                job = await self.queue.claim_due()
            except redis.RedisError as e:
                logger.error("Failed to poll queue", extra={"queue": self.queue.name, "error": str(e)})
                job = None

            if job is None:
                self._semaphore.release()
                await self._wait(self.poll_interval)
                continue

            while not await self.queue.acquire_rate_slot(self.max_jobs, self.duration):
                await asyncio.sleep(self.duration / self.max_jobs)

            task = asyncio.create_task(self._execute(job))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _execute(self, job: Job) -> None:
        try:
            await self.process(job)
        except redis.RedisError as e:
            logger.error("Failed to settle job", extra={
                "queue": self.queue.name,
                "job_id": job.id,
                "error": str(e),
            })
        finally:
            self._semaphore.release()

    async def _wait(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout)
        except asyncio.TimeoutError:
            pass
