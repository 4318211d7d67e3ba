"""In-process event publisher.

Records every event and fans it out to subscribers whose glob pattern
matches the topic ("workflow.*", "task.failed", "*"). Handlers may be
plain functions or coroutines. A failing handler is logged and does not
affect other handlers.

Instance is immediately usable after __init__.
"""

from __future__ import annotations

import asyncio
import fnmatch
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pyconductor.events.base import Event, EventPublisher

logger = logging.getLogger(__name__)

Handler = Callable[[Event], Awaitable[Any] | Any]


class InMemoryEventPublisher(EventPublisher):
    """Event publisher for tests and single-process deployments.

    Usage:
        publisher = InMemoryEventPublisher()
        publisher.subscribe("workflow.*", lambda event: print(event.topic))
        engine = WorkflowEngine(registry, publisher=publisher)
    """

    def __init__(self):
        self.events: list[Event] = []
        self._subscribers: list[tuple[str, Handler]] = []
        # Condition for race-free wait_for(predicate)
        self._published = asyncio.Condition()

    def __repr__(self) -> str:
        return f"InMemoryEventPublisher(events={len(self.events)})"

    def subscribe(self, pattern: str, handler: Handler) -> Callable[[], None]:
        """
        Subscribe a handler to topics matching a glob pattern.

        Returns:
            Function that removes the subscription
        """
        entry = (pattern, handler)
        self._subscribers.append(entry)

        def unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    async def publish(self, event: Event) -> None:
        self.events.append(event)

        for pattern, handler in list(self._subscribers):
            if not fnmatch.fnmatchcase(event.topic, pattern):
                continue
            try:
                outcome = handler(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.warning(f"Event handler for {pattern!r} failed on {event.topic}: {e}")

        async with self._published:
            self._published.notify_all()

    def topics(self, workflow_id: str | None = None) -> list[str]:
        """Topics published so far, in order, optionally for one workflow."""
        return [event.topic for event in self.events_for(workflow_id)]

    def events_for(self, workflow_id: str | None = None) -> list[Event]:
        if workflow_id is None:
            return list(self.events)
        return [event for event in self.events if event.workflow_id == workflow_id]

    def _find(self, topic: str, workflow_id: str | None) -> Event | None:
        for event in self.events:
            if fnmatch.fnmatchcase(event.topic, topic) and (
                workflow_id is None or event.workflow_id == workflow_id
            ):
                return event
        return None

    async def wait_for(
        self, topic: str, workflow_id: str | None = None, timeout: float | None = None
    ) -> Event:
        """
        Wait until an event matching topic (glob) has been published.

        Returns immediately if one was already recorded.

        Raises:
            TimeoutError: If no matching event arrives in time
        """

        async def wait() -> Event:
            async with self._published:
                await self._published.wait_for(lambda: self._find(topic, workflow_id) is not None)
            return self._find(topic, workflow_id)

        return await asyncio.wait_for(wait(), timeout=timeout)

    def clear(self) -> None:
        self.events.clear()
