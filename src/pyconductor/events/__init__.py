"""Lifecycle event publishing.

Provides the publisher interface and its adapters:
    - EventPublisher: Abstract interface
    - InMemoryEventPublisher: In-process recording and fan-out
    - RedisEventPublisher: Redis pub/sub transport
"""

from pyconductor.events.base import Event, EventPublisher, EventTopic, NullEventPublisher
from pyconductor.events.memory import InMemoryEventPublisher


def __getattr__(name: str):
    """Lazy import Redis adapters so redis is only loaded when used."""
    if name == "RedisEventPublisher":
        from pyconductor.events.redis import RedisEventPublisher

        return RedisEventPublisher
    elif name == "RedisControlSubscriber":
        from pyconductor.events.redis import RedisControlSubscriber

        return RedisControlSubscriber
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "Event",
    "EventTopic",
    "EventPublisher",
    "NullEventPublisher",
    "InMemoryEventPublisher",
    "RedisEventPublisher",
    "RedisControlSubscriber",
]
