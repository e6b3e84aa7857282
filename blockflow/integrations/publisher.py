"""Live-update publishing to app-scoped channels.

Editors and running apps subscribe to ``app:<appId>``; the engine only knows
how to publish an event with a JSON payload to a channel.
"""

import json
from collections import deque
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

import structlog
from redis import asyncio as redis_async
from redis.exceptions import RedisError

logger = structlog.get_logger()


def app_channel(app_id: int | str) -> str:
    return f"app:{app_id}"


class Publisher(ABC):
    """Publishes events; delivery failures never fail the caller."""

    @abstractmethod
    async def publish(self, channel: str, event: str, payload: dict[str, Any]) -> None:
        """Publish ``event`` with ``payload`` to ``channel``."""


class InMemoryPublisher(Publisher):
    """Keeps the most recent events in memory. Used by tests and single-process runs."""

    def __init__(self, max_events: int = 1000) -> None:
        self.events: deque[tuple[str, str, dict[str, Any]]] = deque(maxlen=max_events)

    async def publish(self, channel: str, event: str, payload: dict[str, Any]) -> None:
        self.events.append((channel, event, payload))
        logger.debug("event_published", channel=channel, event_name=event)


class RedisPublisher(Publisher):
    """Publishes ``{"event", "payload", "at"}`` messages over Redis pub/sub."""

    def __init__(self, client: redis_async.Redis) -> None:
        self._client = client

    async def publish(self, channel: str, event: str, payload: dict[str, Any]) -> None:
        message = json.dumps(
            {
                "event": event,
                "payload": payload,
                "at": datetime.now(timezone.utc).isoformat(),
            },
            default=str,
        )
        try:
            await self._client.publish(channel, message)
            logger.debug("event_published", channel=channel, event_name=event)
        except RedisError as e:
            logger.warning("event_publish_failed", channel=channel, event_name=event, error=str(e))
