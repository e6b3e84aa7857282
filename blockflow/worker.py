"""Queue worker process.

Consumes execution jobs from Redis and runs them through the same runtime
the API uses for synchronous requests. Run with ``blockflow-worker`` or
``python -m blockflow.worker``.
"""

import asyncio
import signal

import structlog

from blockflow.api.deps import _async_session_maker, _engine
from blockflow.config import settings
from blockflow.core.queue import RedisJobQueue, open_queue_redis
from blockflow.main import configure_logging
from blockflow.services.execution_service import create_execution_runtime

logger = structlog.get_logger()


async def run_worker(stop: asyncio.Event | None = None) -> None:
    """Process queued jobs until ``stop`` is set or a signal arrives."""
    stop = stop or asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    redis_client = await open_queue_redis(backend="redis")
    runtime = create_execution_runtime(_async_session_maker, redis_client)
    queue = RedisJobQueue(redis_client)

    logger.info(
        "worker_starting",
        queue=queue.name,
        max_attempts=queue.max_attempts,
        execution_timeout=settings.execution_timeout,
    )
    try:
        await queue.run(runtime.handle_job, stop)
    finally:
        await redis_client.aclose()
        await _engine.dispose()
        logger.info("worker_stopped")


def main() -> None:
    configure_logging()
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
