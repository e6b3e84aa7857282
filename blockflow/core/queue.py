"""Job queue adapters.

Execution jobs are enqueued by the API and processed by a worker that runs
the same engine entry point as synchronous requests. Redis carries jobs
between processes; without Redis an in-process FIFO drains jobs one at a
time inside the API process.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import deque
from typing import Awaitable, Callable

import structlog
from redis import asyncio as redis_async
from redis.exceptions import RedisError

from blockflow.config import settings
from blockflow.models.execution import ExecutionJob

logger = structlog.get_logger()

JobHandler = Callable[[ExecutionJob], Awaitable[None]]


class QueueUnavailableError(Exception):
    """The configured queue transport cannot be reached."""


class JobQueue(ABC):
    """Where execution jobs go to wait for a worker."""

    backend: str = "abstract"

    @abstractmethod
    async def enqueue(self, job: ExecutionJob) -> str:
        """Add a job and return its job id."""

    async def close(self) -> None:
        """Release transport resources."""


class InProcessJobQueue(JobQueue):
    """FIFO queue drained sequentially by a single background task.

    Only one drain task exists at a time; enqueueing while it runs just
    extends the backlog. Handler failures are logged and the next job runs.

    Example usage:
        queue = InProcessJobQueue(runner.handle_job)
        await queue.enqueue(job)
        await queue.join()  # wait until the backlog is empty
    """

    backend = "memory"

    def __init__(self, handler: JobHandler) -> None:
        self._handler = handler
        self._pending: deque[ExecutionJob] = deque()
        self._drainer: asyncio.Task | None = None

    def __len__(self) -> int:
        return len(self._pending)

    async def enqueue(self, job: ExecutionJob) -> str:
        self._pending.append(job)
        logger.info("job_enqueued", job_id=job.job_id, backend=self.backend, backlog=len(self._pending))
        if self._drainer is None or self._drainer.done():
            self._drainer = asyncio.create_task(self._drain())
        return job.job_id

    async def _drain(self) -> None:
        while self._pending:
            job = self._pending.popleft()
            job.attempts += 1
            try:
                await self._handler(job)
                logger.info("job_completed", job_id=job.job_id, backend=self.backend)
            except Exception:
                logger.exception("job_failed", job_id=job.job_id, backend=self.backend)

    async def join(self) -> None:
        """Wait until every enqueued job has been handled."""
        while self._drainer is not None and not self._drainer.done():
            await self._drainer

    async def close(self) -> None:
        if self._drainer is not None and not self._drainer.done():
            self._drainer.cancel()
            try:
                await self._drainer
            except asyncio.CancelledError:
                pass
        self._pending.clear()


class RedisJobQueue(JobQueue):
    """Reliable Redis list queue.

    Jobs are pushed on ``<name>``; a worker atomically moves one to
    ``<name>:processing`` while it runs and removes it when done. A job
    whose handler raises is pushed back until it has been attempted
    ``max_attempts`` times, then parked on ``<name>:failed``.
    """

    backend = "redis"

    def __init__(
        self,
        client: redis_async.Redis,
        name: str | None = None,
        max_attempts: int | None = None,
    ) -> None:
        self._client = client
        self.name = name or settings.queue_name
        self.max_attempts = max_attempts or settings.queue_max_attempts

    @property
    def processing_key(self) -> str:
        return f"{self.name}:processing"

    @property
    def failed_key(self) -> str:
        return f"{self.name}:failed"

    async def enqueue(self, job: ExecutionJob) -> str:
        await self._client.lpush(self.name, job.to_json())
        logger.info("job_enqueued", job_id=job.job_id, backend=self.backend, queue=self.name)
        return job.job_id

    async def recover(self) -> int:
        """Return jobs orphaned in the processing list to the queue.

        Called once at worker start, before any job is taken.
        """
        moved = 0
        while await self._client.rpoplpush(self.processing_key, self.name) is not None:
            moved += 1
        if moved:
            logger.warning("jobs_recovered", count=moved, queue=self.name)
        return moved

    async def process_next(self, handler: JobHandler, timeout: int | None = None) -> bool:
        """Take one job, run it and settle it.

        Returns:
            False when no job arrived within ``timeout`` seconds
        """
        raw = await self._client.brpoplpush(
            self.name,
            self.processing_key,
            timeout=timeout or settings.queue_poll_timeout,
        )
        if raw is None:
            return False

        try:
            job = ExecutionJob.from_json(raw)
        except (ValueError, KeyError, TypeError):
            logger.error("job_malformed", queue=self.name)
            await self._client.lrem(self.processing_key, 1, raw)
            await self._client.lpush(self.failed_key, raw)
            return True

        job.attempts += 1
        try:
            await handler(job)
        except Exception as e:
            await self._client.lrem(self.processing_key, 1, raw)
            if job.attempts < self.max_attempts:
                await self._client.lpush(self.name, job.to_json())
                logger.warning(
                    "job_retry_scheduled",
                    job_id=job.job_id,
                    attempt=job.attempts,
                    max_attempts=self.max_attempts,
                    error=str(e),
                )
            else:
                await self._client.lpush(self.failed_key, job.to_json())
                logger.error("job_dead_lettered", job_id=job.job_id, attempts=job.attempts, error=str(e))
            return True

        await self._client.lrem(self.processing_key, 1, raw)
        logger.info("job_completed", job_id=job.job_id, backend=self.backend, attempts=job.attempts)
        return True

    async def run(self, handler: JobHandler, stop: asyncio.Event) -> None:
        """Process jobs until ``stop`` is set."""
        await self.recover()
        logger.info("queue_worker_started", queue=self.name)
        while not stop.is_set():
            try:
                await self.process_next(handler)
            except RedisError as e:
                logger.error("queue_transport_error", queue=self.name, error=str(e))
                await asyncio.sleep(1)
        logger.info("queue_worker_stopped", queue=self.name)


async def connect_redis(url: str | None = None) -> redis_async.Redis:
    """Open a Redis client and check it answers.

    Raises:
        QueueUnavailableError: If Redis cannot be reached
    """
    client = redis_async.from_url(url or settings.redis_url)
    try:
        await client.ping()
    except (RedisError, OSError) as e:
        await client.aclose()
        raise QueueUnavailableError(f"Redis unavailable: {e}") from e
    return client


async def open_queue_redis(backend: str | None = None, url: str | None = None) -> redis_async.Redis | None:
    """Connect to Redis for the configured queue backend.

    ``auto`` tries Redis and returns None when it is unreachable; ``redis``
    fails instead; ``memory`` never touches Redis.

    Raises:
        QueueUnavailableError: If backend is 'redis' and Redis is unreachable
    """
    backend = backend or settings.queue_backend
    if backend == "memory":
        return None
    try:
        return await connect_redis(url)
    except QueueUnavailableError as e:
        if backend == "redis":
            raise
        logger.warning("job_queue_fallback", backend="memory", reason=str(e))
        return None


def create_job_queue(handler: JobHandler, redis_client: redis_async.Redis | None = None) -> JobQueue:
    """Redis queue when a client is available, otherwise the in-process queue.

    Args:
        handler: Job handler used by the in-process queue
        redis_client: Connected client from :func:`open_queue_redis`
    """
    if redis_client is None:
        return InProcessJobQueue(handler)
    logger.info("job_queue_connected", backend="redis", queue=settings.queue_name)
    return RedisJobQueue(redis_client)
