"""Built-in task executors: delay, condition, script and http.

script and condition tasks never evaluate source code. Their config names
a callable registered with the executor (or holds the callable itself,
for in-process use), which is called with the TaskContext.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable, Mapping
from typing import Any

import httpx

from pyconductor.executors.base import TaskContext, TaskExecutor
from pyconductor.models import Task

logger = logging.getLogger(__name__)

DEFAULT_DELAY_MS = 1000
DEFAULT_HTTP_TIMEOUT = 30.0


async def _call(func: Callable[..., Any], context: TaskContext) -> Any:
    """Call a sync or async callable with the context."""
    value = func(context)
    if inspect.isawaitable(value):
        value = await value
    return value


class DelayTaskExecutor(TaskExecutor):
    """Waits config["duration"] milliseconds, then completes with None."""

    async def execute(self, task: Task, context: TaskContext) -> None:
        duration_ms = task.config.get("duration", DEFAULT_DELAY_MS)
        if duration_ms > 0:
            await asyncio.sleep(duration_ms / 1000.0)
        else:
            # still a suspension point
            await asyncio.sleep(0)
        return None

    def validate_config(self, config: Mapping[str, Any]) -> list[str]:
        duration = config.get("duration", DEFAULT_DELAY_MS)
        if isinstance(duration, bool) or not isinstance(duration, (int, float)) or duration < 0:
            return ["duration must be a non-negative number of milliseconds"]
        return []


class _NamedCallableExecutor(TaskExecutor):
    """Shared lookup for executors whose config names a callable."""

    config_key = ""

    def __init__(self, callables: Mapping[str, Callable[..., Any]] | None = None):
        self._callables: dict[str, Callable[..., Any]] = dict(callables or {})

    def register(self, name: str, func: Callable[..., Any]) -> None:
        self._callables[name] = func

    def _lookup(self, task: Task) -> Callable[..., Any]:
        target = task.config.get(self.config_key)
        if callable(target):
            return target
        if isinstance(target, str) and target in self._callables:
            return self._callables[target]
        raise LookupError(f"{self.config_key} {target!r} is not registered")

    def validate_config(self, config: Mapping[str, Any]) -> list[str]:
        target = config.get(self.config_key)
        if callable(target):
            return []
        if not isinstance(target, str) or not target:
            return [f"{self.config_key} must be a callable or a registered name"]
        if target not in self._callables:
            return [f"{self.config_key} {target!r} is not registered"]
        return []


class ScriptTaskExecutor(_NamedCallableExecutor):
    """Calls config["script"] with the TaskContext and returns its value.

    Example:
        executor = ScriptTaskExecutor({"sum": lambda ctx: sum(ctx.params["values"])})
    """

    config_key = "script"

    async def execute(self, task: Task, context: TaskContext) -> Any:
        return await _call(self._lookup(task), context)


class ConditionTaskExecutor(_NamedCallableExecutor):
    """Evaluates config["condition"] against the TaskContext.

    The task completes with the predicate's truth value. A false
    condition is a result, not a failure.
    """

    config_key = "condition"

    async def execute(self, task: Task, context: TaskContext) -> bool:
        return bool(await _call(self._lookup(task), context))


class HttpTaskExecutor(TaskExecutor):
    """
    Performs an HTTP request with httpx.

    Config keys:
        url: Target URL (required)
        method: HTTP method, GET by default
        headers: Extra request headers
        body: JSON-serializable request body
        timeout: Per-request timeout in seconds

    Non-2xx responses raise httpx.HTTPStatusError, which the engine treats
    as a task failure. The result is the decoded JSON body, or the text
    body when the response is not JSON.
    """

    def __init__(
        self, client: httpx.AsyncClient | None = None, timeout: float = DEFAULT_HTTP_TIMEOUT
    ):
        """
        Args:
            client: Shared client to use. When None a client is created per
                request and closed afterwards.
            timeout: Default timeout when the task config sets none
        """
        self._client = client
        self._timeout = timeout

    async def execute(self, task: Task, context: TaskContext) -> Any:
        config = task.config
        method = str(config.get("method", "GET")).upper()
        headers = {"Content-Type": "application/json", **(config.get("headers") or {})}
        timeout = config.get("timeout", self._timeout)

        logger.debug(f"HTTP task {task.id}: {method} {config['url']}")

        if self._client is not None:
            response = await self._request(self._client, method, config, headers, timeout)
        else:
            async with httpx.AsyncClient() as client:
                response = await self._request(client, method, config, headers, timeout)

        response.raise_for_status()

        try:
            return response.json()
        except ValueError:
            return response.text

    @staticmethod
    async def _request(
        client: httpx.AsyncClient,
        method: str,
        config: Mapping[str, Any],
        headers: dict[str, str],
        timeout: float,
    ) -> httpx.Response:
        return await client.request(
            method,
            config["url"],
            headers=headers,
            json=config.get("body"),
            timeout=timeout,
        )

    def validate_config(self, config: Mapping[str, Any]) -> list[str]:
        errors = []
        url = config.get("url")
        if not isinstance(url, str) or not url:
            errors.append("url must be a non-empty string")
        method = config.get("method")
        if method is not None and not isinstance(method, str):
            errors.append("method must be a string")
        return errors
