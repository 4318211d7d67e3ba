"""Redis pub/sub transport for lifecycle events and control messages.

Channels:
- <prefix>workflow.created, <prefix>task.failed, ... : published events
  (pickled Event objects)
- <prefix>workflow.start, <prefix>workflow.pause, ... : control messages
  consumed by RedisControlSubscriber (JSON objects)

Both classes follow the same lifecycle as the storage adapters: construct,
then connect(), then close().
"""

from __future__ import annotations

import json
import logging
import pickle
from collections.abc import AsyncIterator, Iterable
from typing import Any

import redis.asyncio as redis

from pyconductor.events.base import Event, EventPublisher

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "pyconductor:"


class RedisEventPublisher(EventPublisher):
    """Publishes events on Redis pub/sub channels.

    Usage:
        publisher = RedisEventPublisher("redis://localhost:6379")
        await publisher.connect()
        engine = WorkflowEngine(registry, publisher=publisher)
    """

    def __init__(self, redis_url: str = "redis://localhost:6379", prefix: str = DEFAULT_PREFIX):
        self._redis_url = redis_url
        self._prefix = prefix
        self._redis: redis.Redis | None = None

    def __repr__(self) -> str:
        return f"RedisEventPublisher({self._redis_url})"

    @classmethod
    def from_client(cls, client: redis.Redis, prefix: str = DEFAULT_PREFIX) -> RedisEventPublisher:
        """Wrap an existing client (shared connection pool)."""
        publisher = cls(prefix=prefix)
        publisher._redis = client
        return publisher

    async def connect(self) -> None:
        if self._redis is None:
            self._redis = redis.from_url(self._redis_url, decode_responses=False)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    def channel(self, topic: str) -> str:
        return f"{self._prefix}{topic}"

    async def publish(self, event: Event) -> None:
        if self._redis is None:
            raise RuntimeError("Not connected. Call connect() first.")
        receivers = await self._redis.publish(self.channel(event.topic), pickle.dumps(event))
        logger.debug(f"Published {event.topic} for {event.workflow_id} to {receivers} receivers")


class RedisControlSubscriber:
    """Yields (topic, message) pairs from Redis control channels.

    Feed it to ControlPlane.listen():

        subscriber = RedisControlSubscriber("redis://localhost:6379")
        await subscriber.connect()
        await control.listen(subscriber.messages())
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        prefix: str = DEFAULT_PREFIX,
        topics: Iterable[str] | None = None,
    ):
        from pyconductor.engine.control import ControlTopic

        self._redis_url = redis_url
        self._prefix = prefix
        self._topics = list(topics) if topics is not None else [t.value for t in ControlTopic]
        self._redis: redis.Redis | None = None
        self._pubsub: Any = None

    async def connect(self) -> None:
        if self._redis is None:
            self._redis = redis.from_url(self._redis_url, decode_responses=True)
        self._pubsub = self._redis.pubsub()
        await self._pubsub.subscribe(*[f"{self._prefix}{topic}" for topic in self._topics])

    async def close(self) -> None:
        if self._pubsub is not None:
            await self._pubsub.aclose()
            self._pubsub = None
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def messages(self) -> AsyncIterator[tuple[str, dict[str, Any]]]:
        """Iterate over decoded control messages until the subscription closes.

        Messages that are not JSON objects are logged and skipped.
        """
        if self._pubsub is None:
            raise RuntimeError("Not connected. Call connect() first.")

        async for message in self._pubsub.listen():
            if message.get("type") != "message":
                continue

            channel = message["channel"]
            topic = channel[len(self._prefix):] if channel.startswith(self._prefix) else channel

            try:
                payload = json.loads(message["data"])
            except (TypeError, ValueError) as e:
                logger.warning(f"Dropping malformed control message on {channel}: {e}")
                continue

            if not isinstance(payload, dict):
                logger.warning(f"Dropping non-object control message on {channel}")
                continue

            yield topic, payload
