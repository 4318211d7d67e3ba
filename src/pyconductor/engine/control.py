"""Control plane: drive the engine from bus messages.

Consumed topics carry {"workflow_id": ..., "params": ...} payloads and map
one-to-one onto engine operations. The transport is anything that yields
(topic, message) pairs, e.g. RedisControlSubscriber.messages().
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterable, Mapping
from enum import Enum
from typing import TYPE_CHECKING, Any

from pyconductor.errors import ControlMessageError, WorkflowError

if TYPE_CHECKING:
    from pyconductor.engine.engine import WorkflowEngine

logger = logging.getLogger(__name__)


class ControlTopic(str, Enum):
    """Topics the engine consumes."""

    START = "workflow.start"
    PAUSE = "workflow.pause"
    RESUME = "workflow.resume"
    CANCEL = "workflow.cancel"

    def __str__(self) -> str:
        return self.value


class ControlPlane:
    """Dispatches control messages to a WorkflowEngine.

    Usage:
        control = ControlPlane(engine)
        await control.handle("workflow.start", {"workflow_id": wid, "params": {}})
    """

    def __init__(self, engine: WorkflowEngine):
        self._engine = engine

    async def handle(self, topic: str | ControlTopic, message: Mapping[str, Any]) -> Any:
        """
        Apply one control message.

        Returns:
            The engine operation's result (None for start, bool otherwise)

        Raises:
            ControlMessageError: Unknown topic, missing workflow_id or
                non-mapping params
            WorkflowError: Whatever the engine operation raises
        """
        topic = str(topic)
        try:
            control = ControlTopic(topic)
        except ValueError:
            raise ControlMessageError(topic, "unknown topic") from None

        workflow_id = message.get("workflow_id") if isinstance(message, Mapping) else None
        if not workflow_id:
            raise ControlMessageError(topic, "workflow_id is required")

        if control is ControlTopic.START:
            params = message.get("params")
            if params is not None and not isinstance(params, Mapping):
                raise ControlMessageError(topic, "params must be an object")
            return await self._engine.start_workflow(workflow_id, params)
        if control is ControlTopic.PAUSE:
            return await self._engine.pause_workflow(workflow_id)
        if control is ControlTopic.RESUME:
            return await self._engine.resume_workflow(workflow_id)
        return await self._engine.cancel_workflow(workflow_id)

    async def listen(self, source: AsyncIterable[tuple[str, Mapping[str, Any]]]) -> int:
        """
        Consume control messages until the source is exhausted.

        A bad message never stops the loop: its error is logged and the
        next message is processed.

        Returns:
            Number of messages applied successfully
        """
        applied = 0
        async for topic, message in source:
            try:
                await self.handle(topic, message)
            except WorkflowError as e:
                logger.warning(f"Control message on {topic} rejected: {e}")
                continue
            applied += 1
        return applied
