"""
WorkflowEngine - owns the workflow registry and drives each workflow's run loop.

Scheduling model:
- One asyncio event loop. Workflows interleave, tasks inside a workflow
  run strictly one at a time.
- Every mutation of a workflow happens under that workflow's own
  asyncio.Lock. There is no global lock, so slow workflows never hold
  up others.
- The run loop is a chain of deferred steps. Each step selects and runs at
  most one task, then schedules its continuation as a new asyncio task.
  The call stack stays flat however long the workflow is, and pause or
  cancel requests land between tasks.
- The executor call happens outside the lock. Pause and cancel never
  interrupt an in-flight task. They only stop the next one from being
  selected. The in-flight task's outcome is still recorded.

Events for a workflow are published while its lock is held, so they come
out in the order the transitions happened.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import pickle
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

from pyconductor.config import EngineConfig
from pyconductor.engine.resolver import blocked_tasks, next_retry_due_ms, select_next_task
from pyconductor.errors import (
    DependencyDeadlock,
    EngineClosed,
    InvalidDefinition,
    InvalidParams,
    InvalidStateTransition,
    RetryExhausted,
    TaskExecutionError,
    WorkflowNotFound,
)
from pyconductor.events.base import Event, EventPublisher, EventTopic, NullEventPublisher
from pyconductor.executors.base import TaskContext, TaskExecutorRegistry
from pyconductor.models import (
    TERMINAL_STATUSES,
    Task,
    TaskStatus,
    Workflow,
    WorkflowDefinition,
    WorkflowStatus,
    compute_retry_delay,
    generate_task_id,
    now_ms,
    should_retry,
)
from pyconductor.storage.base import StateStore
from pyconductor.storage.memory import InMemoryStateStore
from uuid_extensions import uuid7

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """Stateful orchestrator for workflows.

    All dependencies passed explicitly, no globals.

    Usage:
        registry = TaskExecutorRegistry.with_builtins(functions={"extract": extract})
        engine = WorkflowEngine(registry, state_store=store, publisher=publisher)

        workflow_id = await engine.create_workflow(definition)
        await engine.start_workflow(workflow_id, {"date": "2024-01-01"})
        final = await engine.wait_for(workflow_id)

        await engine.shutdown()
    """

    def __init__(
        self,
        executors: TaskExecutorRegistry | None = None,
        state_store: StateStore | None = None,
        publisher: EventPublisher | None = None,
        config: EngineConfig | None = None,
    ):
        """
        Args:
            executors: Task executor registry (built-ins when None)
            state_store: Snapshot persistence (in-memory when None)
            publisher: Event sink (events are dropped when None)
            config: Engine defaults (EngineConfig() when None)
        """
        self._executors = executors if executors is not None else TaskExecutorRegistry.with_builtins()
        self._store = state_store if state_store is not None else InMemoryStateStore()
        self._publisher = publisher if publisher is not None else NullEventPublisher()
        self._config = config if config is not None else EngineConfig()

        self._workflows: dict[str, Workflow] = {}
        self._running: set[str] = set()
        self._locks: dict[str, asyncio.Lock] = {}

        # Workflow ids with a step scheduled or executing
        self._active_steps: set[str] = set()
        self._retry_timers: dict[str, asyncio.TimerHandle] = {}

        # Track background tasks to prevent garbage collection
        self._background_tasks: set[asyncio.Task] = set()

        self._status_changed = asyncio.Condition()
        self._closed = False

    def __repr__(self) -> str:
        return (
            f"WorkflowEngine(workflows={len(self._workflows)}, running={len(self._running)}, "
            f"store={self._store!r})"
        )

    async def __aenter__(self) -> WorkflowEngine:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def executors(self) -> TaskExecutorRegistry:
        return self._executors

    # ========================================================================
    # Creation
    # ========================================================================

    async def create_workflow(self, definition: WorkflowDefinition | Mapping[str, Any]) -> str:
        """
        Validate a definition, register the workflow and persist it.

        Args:
            definition: WorkflowDefinition or an equivalent plain dict

        Returns:
            The new workflow's id

        Raises:
            InvalidDefinition: If the definition is malformed (nothing is
                registered or persisted)
            StorageError: If the initial snapshot can't be saved (nothing
                is registered)
        """
        if not isinstance(definition, WorkflowDefinition):
            try:
                definition = WorkflowDefinition.from_dict(definition)
            except (TypeError, AttributeError) as e:
                raise InvalidDefinition([str(e)]) from e

        errors = definition.validate(known_types=self._executors.types())
        for index, task_def in enumerate(definition.tasks):
            label = task_def.id if task_def.id is not None else str(index)
            for message in self._executors.validate(task_def.type, task_def.config):
                errors.append(f"task {label!r}: {message}")
        if errors:
            raise InvalidDefinition(errors)

        workflow = self._build_workflow(definition)

        await self._store.save(workflow)
        self._workflows[workflow.id] = workflow

        async with self._lock_for(workflow.id):
            await self._emit_workflow(EventTopic.WORKFLOW_CREATED, workflow)

        logger.info(
            f"Workflow created: {workflow.name} ({workflow.id}) with {len(workflow.tasks)} tasks"
        )
        return workflow.id

    def _build_workflow(self, definition: WorkflowDefinition) -> Workflow:
        """Turn a validated definition into a Workflow, applying config defaults."""
        tasks = []
        for task_def in definition.tasks:
            max_retries = task_def.max_retries
            if max_retries is None:
                max_retries = self._config.default_max_retries

            retry_delay_ms = task_def.retry_delay_ms
            if retry_delay_ms is None:
                retry_delay_ms = self._config.default_retry_delay_ms

            tasks.append(
                Task(
                    id=task_def.id if task_def.id is not None else generate_task_id(),
                    name=task_def.name,
                    type=task_def.type,
                    config=dict(task_def.config),
                    dependencies=list(dict.fromkeys(task_def.dependencies)),
                    max_retries=max_retries,
                    retry_delay_ms=retry_delay_ms,
                )
            )

        return Workflow(
            id=str(uuid7()),
            name=definition.name,
            description=definition.description,
            tasks=tasks,
            metadata=dict(definition.metadata),
        )

    # ========================================================================
    # Control operations
    # ========================================================================

    async def start_workflow(self, workflow_id: str, params: Mapping[str, Any] | None = None) -> None:
        """
        Start (or restart a paused) workflow and enter its run loop.

        Returns as soon as the run loop is scheduled. Use wait_for() to
        await the outcome.

        Args:
            workflow_id: Workflow to start
            params: Execution context. Replaces any previous params when
                given, kept as-is when None.

        Raises:
            WorkflowNotFound: If the id is unknown
            InvalidStateTransition: If the workflow is not created or
                paused (nothing is changed)
            InvalidParams: If params is not a mapping (nothing is changed)
            EngineClosed: If the engine was shut down
        """
        workflow = self._get(workflow_id)
        if params is not None and not isinstance(params, Mapping):
            raise InvalidParams(workflow_id, params)
        if self._closed:
            raise EngineClosed("start")

        async with self._lock_for(workflow_id):
            if not workflow.status.can_start:
                raise InvalidStateTransition(workflow_id, workflow.status, "start")

            new_params = dict(params) if params is not None else workflow.params

            workflow.status = WorkflowStatus.RUNNING
            if workflow.started_at is None:
                workflow.started_at = datetime.now(UTC)
            workflow.params = new_params
            workflow.touch()
            self._running.add(workflow_id)

            await self._persist(workflow)
            await self._emit_workflow(EventTopic.WORKFLOW_STARTED, workflow)

        logger.info(f"Workflow started: {workflow.name} ({workflow_id})")
        await self._notify_status()
        self._schedule_step(workflow_id)

    async def pause_workflow(self, workflow_id: str) -> bool:
        """
        Suspend scheduling of further tasks.

        A task already running is not interrupted: it runs to completion
        and its outcome is recorded, but nothing else is selected until the
        workflow is resumed.

        Returns:
            True if the workflow was paused, False if it wasn't running

        Raises:
            WorkflowNotFound: If the id is unknown
        """
        workflow = self._get(workflow_id)

        async with self._lock_for(workflow_id):
            if workflow.status != WorkflowStatus.RUNNING:
                return False

            workflow.status = WorkflowStatus.PAUSED
            workflow.touch()
            self._running.discard(workflow_id)
            self._cancel_retry_timer(workflow_id)

            await self._persist(workflow)
            await self._emit_workflow(EventTopic.WORKFLOW_PAUSED, workflow)

        logger.info(f"Workflow paused: {workflow_id}")
        await self._notify_status()
        return True

    async def resume_workflow(self, workflow_id: str) -> bool:
        """
        Resume a paused workflow and re-enter its run loop.

        Returns:
            True if the workflow was resumed, False if it wasn't paused

        Raises:
            WorkflowNotFound: If the id is unknown
            EngineClosed: If the engine was shut down
        """
        workflow = self._get(workflow_id)
        if self._closed:
            raise EngineClosed("resume")

        async with self._lock_for(workflow_id):
            if workflow.status != WorkflowStatus.PAUSED:
                return False

            workflow.status = WorkflowStatus.RUNNING
            workflow.touch()
            self._running.add(workflow_id)

            await self._persist(workflow)
            await self._emit_workflow(EventTopic.WORKFLOW_RESUMED, workflow)

        logger.info(f"Workflow resumed: {workflow_id}")
        await self._notify_status()
        self._schedule_step(workflow_id)
        return True

    async def cancel_workflow(self, workflow_id: str) -> bool:
        """
        Cancel a workflow from any non-terminal status.

        Completed tasks are kept as they are. A task already running is not
        interrupted; its outcome is recorded when it finishes, but no
        further task is ever selected.

        Returns:
            True if the workflow was cancelled, False if it was terminal

        Raises:
            WorkflowNotFound: If the id is unknown
        """
        workflow = self._get(workflow_id)

        async with self._lock_for(workflow_id):
            if workflow.is_terminal:
                return False

            workflow.status = WorkflowStatus.CANCELLED
            workflow.cancelled_at = datetime.now(UTC)
            workflow.touch()
            self._running.discard(workflow_id)
            self._cancel_retry_timer(workflow_id)

            await self._persist(workflow)
            await self._emit_workflow(EventTopic.WORKFLOW_CANCELLED, workflow)

        logger.info(f"Workflow cancelled: {workflow_id}")
        await self._notify_status()
        return True

    # ========================================================================
    # Queries
    # ========================================================================

    def get_workflow(self, workflow_id: str) -> Workflow:
        """Snapshot of a workflow.

        Raises:
            WorkflowNotFound: If the id is unknown
        """
        return self._get(workflow_id).snapshot()

    def list_workflows(self, status: WorkflowStatus | None = None) -> list[Workflow]:
        """Snapshots of all workflows, optionally filtered by status."""
        return [
            workflow.snapshot()
            for workflow in self._workflows.values()
            if status is None or workflow.status == status
        ]

    def running_workflows(self) -> list[Workflow]:
        """Snapshots of the workflows currently in the running set."""
        return [self._workflows[wid].snapshot() for wid in self._running if wid in self._workflows]

    async def wait_for(
        self,
        workflow_id: str,
        statuses: Iterable[WorkflowStatus] | None = None,
        timeout: float | None = None,
    ) -> Workflow:
        """
        Wait until a workflow reaches one of the given statuses.

        Args:
            workflow_id: Workflow to watch
            statuses: Target statuses, terminal statuses when None
            timeout: Seconds to wait, forever when None

        Returns:
            Snapshot of the workflow once it got there

        Raises:
            WorkflowNotFound: If the id is unknown
            TimeoutError: If the timeout expires first
        """
        workflow = self._get(workflow_id)
        targets = frozenset(statuses) if statuses is not None else TERMINAL_STATUSES

        async def wait() -> None:
            async with self._status_changed:
                await self._status_changed.wait_for(lambda: workflow.status in targets)

        await asyncio.wait_for(wait(), timeout=timeout)
        return workflow.snapshot()

    # ========================================================================
    # Recovery and shutdown
    # ========================================================================

    async def recover(self) -> list[str]:
        """
        Load unfinished workflows from the state store into the registry.

        No workflow.created events are emitted. Tasks that were running
        when the previous process died go back to pending, and workflows
        that were running re-enter their run loop. Ids already registered
        and terminal workflows are skipped.

        Returns:
            Ids of the recovered workflows
        """
        recovered = []

        for workflow in await self._store.load_all():
            if workflow.is_terminal or workflow.id in self._workflows:
                continue

            interrupted = [task for task in workflow.tasks if task.status == TaskStatus.RUNNING]
            for task in interrupted:
                task.reset_interrupted()
                logger.warning(
                    f"Task {task.id} of workflow {workflow.id} was interrupted, back to pending"
                )

            # Crashed between recording a failure and scheduling its retry
            unscheduled = [
                task
                for task in workflow.tasks
                if task.status == TaskStatus.FAILED and should_retry(task)
            ]
            for task in unscheduled:
                task.schedule_retry(0)

            self._workflows[workflow.id] = workflow
            recovered.append(workflow.id)

            if interrupted or unscheduled:
                workflow.touch()
                await self._persist(workflow)

            if workflow.status == WorkflowStatus.RUNNING:
                self._running.add(workflow.id)
                self._schedule_step(workflow.id)

        logger.info(f"Recovered {len(recovered)} unfinished workflows")
        return recovered

    async def shutdown(self) -> None:
        """
        Stop scheduling and wait for in-flight steps to finish.

        Explicit shutdown, not relying on GC. Pending retry timers are
        cancelled; their workflows stay in their current status and can be
        picked up again by recover() in a new engine.
        """
        self._closed = True

        for handle in self._retry_timers.values():
            handle.cancel()
        self._retry_timers.clear()

        if self._background_tasks:
            logger.info(f"Waiting for {len(self._background_tasks)} in-flight steps to finish...")
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

        logger.info("Workflow engine stopped")

    # ========================================================================
    # Run loop
    # ========================================================================

    def _schedule_step(self, workflow_id: str) -> None:
        """Schedule the next run-loop step as a deferred continuation.

        No-op while a step for the workflow is already scheduled or
        executing: that step always schedules its own continuation.
        """
        if self._closed or workflow_id in self._active_steps:
            return

        self._active_steps.add(workflow_id)
        task = asyncio.create_task(self._run_step(workflow_id), name=f"pyconductor-step-{workflow_id}")
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _run_step(self, workflow_id: str) -> None:
        proceed = False
        try:
            proceed = await self._step(workflow_id)
        except Exception:
            logger.exception(f"Run loop for workflow {workflow_id} crashed")
        finally:
            self._active_steps.discard(workflow_id)

        if proceed:
            self._schedule_step(workflow_id)

    async def _step(self, workflow_id: str) -> bool:
        """
        One scheduling step.

        Returns:
            True if a task was executed and the loop should continue
        """
        workflow = self._workflows.get(workflow_id)
        if workflow is None:
            return False

        lock = self._lock_for(workflow_id)
        prepare_error: TaskExecutionError | None = None

        async with lock:
            if workflow.status != WorkflowStatus.RUNNING:
                logger.debug(f"Workflow {workflow_id} is {workflow.status}, run loop idle")
                return False

            at_ms = now_ms()
            task = select_next_task(workflow, at_ms)
            if task is None:
                await self._settle(workflow, at_ms)
                return False

            task.mark_running()
            workflow.touch()
            await self._persist(workflow)

            if self._config.emit_task_started:
                await self._emit_task(
                    EventTopic.TASK_STARTED, workflow, task, attempt=task.attempts
                )

            try:
                context = self._build_context(workflow, task)
                task_snapshot = copy.deepcopy(task)
            except Exception as e:
                prepare_error = TaskExecutionError(task.id, task.attempts, e)

        logger.info(
            f"Task started: {task.name} ({task.id}) in workflow {workflow_id}, "
            f"attempt {task.attempts}"
        )

        if prepare_error is not None:
            result, error = None, prepare_error
        else:
            result, error = await self._invoke(task_snapshot, context)

        async with lock:
            if error is None:
                await self._on_task_completed(workflow, task, result)
            else:
                await self._on_task_failed(workflow, task, error)

        return True

    def _build_context(self, workflow: Workflow, task: Task) -> TaskContext:
        return TaskContext(
            workflow_id=workflow.id,
            task_id=task.id,
            attempt=task.attempts,
            params=copy.deepcopy(workflow.params),
            results=copy.deepcopy(workflow.results()),
            workflow=workflow.snapshot(),
        )

    async def _invoke(
        self, task: Task, context: TaskContext
    ) -> tuple[Any, TaskExecutionError | None]:
        """Call the task's executor. Every exception becomes a TaskExecutionError."""
        try:
            executor = self._executors.resolve(task.type)
            result = await executor.execute(task, context)
        except Exception as e:
            return None, TaskExecutionError(task.id, context.attempt, e)

        # Results live in snapshots, events and the state store
        try:
            result = copy.deepcopy(result)
            pickle.dumps(result, protocol=pickle.HIGHEST_PROTOCOL)
        except Exception as e:
            cause = TypeError(
                f"task result of type {type(result).__name__} is not serializable: {e}"
            )
            return None, TaskExecutionError(task.id, context.attempt, cause)
        return result, None

    async def _on_task_completed(self, workflow: Workflow, task: Task, result: Any) -> None:
        task.mark_completed(result)
        workflow.touch()

        await self._persist(workflow)
        await self._emit_task(EventTopic.TASK_COMPLETED, workflow, task, result=result)

        if workflow.status == WorkflowStatus.RUNNING:
            logger.info(f"Task completed: {task.id} in workflow {workflow.id}")
        else:
            logger.info(
                f"Task completed: {task.id} in workflow {workflow.id} "
                f"(recorded, workflow is {workflow.status})"
            )

    async def _on_task_failed(
        self, workflow: Workflow, task: Task, error: TaskExecutionError
    ) -> None:
        message = str(error)
        task.mark_failed(message)
        workflow.touch()

        logger.error(
            f"Task failed: {task.id} in workflow {workflow.id} "
            f"(attempt {task.attempts}): {message}"
        )

        await self._persist(workflow)
        await self._emit_task(EventTopic.TASK_FAILED, workflow, task, error=message)

        if workflow.is_terminal:
            # Cancelled while the task ran: record only
            return

        if should_retry(task):
            delay_ms = compute_retry_delay(task, self._config.retry_policy)
            task.schedule_retry(delay_ms)
            workflow.touch()
            await self._persist(workflow)

            logger.info(
                f"Task retry scheduled: {task.id} "
                f"(retry {task.retry_count}/{task.max_retries}) in {delay_ms}ms"
            )
            return

        exhausted = RetryExhausted(task.id, task.attempts, message)
        logger.error(f"Workflow {workflow.id}: {exhausted}")
        await self._fail_workflow(workflow, message)

    async def _settle(self, workflow: Workflow, at_ms: int) -> None:
        """Handle 'no eligible task': complete, wait for a retry, or fail."""
        if workflow.all_completed():
            await self._complete_workflow(workflow)
            return

        due_ms = next_retry_due_ms(workflow, at_ms)
        if due_ms is not None:
            self._arm_retry_timer(workflow.id, due_ms - at_ms)
            return

        failed = [task for task in workflow.tasks if task.status == TaskStatus.FAILED]
        if failed:
            await self._fail_workflow(workflow, failed[0].error or f"task {failed[0].id} failed")
            return

        deadlock = DependencyDeadlock(workflow.id, blocked_tasks(workflow))
        logger.error(str(deadlock))
        await self._fail_workflow(workflow, str(deadlock))

    async def _complete_workflow(self, workflow: Workflow) -> None:
        workflow.status = WorkflowStatus.COMPLETED
        workflow.completed_at = datetime.now(UTC)
        workflow.touch()
        self._running.discard(workflow.id)

        await self._persist(workflow)
        await self._emit_workflow(EventTopic.WORKFLOW_COMPLETED, workflow)

        logger.info(f"Workflow completed: {workflow.name} ({workflow.id})")
        await self._notify_status()

    async def _fail_workflow(self, workflow: Workflow, message: str) -> None:
        workflow.status = WorkflowStatus.FAILED
        workflow.error = message
        workflow.failed_at = datetime.now(UTC)
        workflow.touch()
        self._running.discard(workflow.id)
        self._cancel_retry_timer(workflow.id)

        await self._persist(workflow)
        await self._emit_workflow(EventTopic.WORKFLOW_FAILED, workflow, error=message)

        logger.error(f"Workflow failed: {workflow.name} ({workflow.id}): {message}")
        await self._notify_status()

    # ========================================================================
    # Retry timers
    # ========================================================================

    def _arm_retry_timer(self, workflow_id: str, delay_ms: int) -> None:
        self._cancel_retry_timer(workflow_id)
        if self._closed:
            return

        loop = asyncio.get_running_loop()
        self._retry_timers[workflow_id] = loop.call_later(
            max(delay_ms, 0) / 1000.0, self._on_retry_due, workflow_id
        )
        logger.debug(f"Workflow {workflow_id} waiting {delay_ms}ms for a task retry")

    def _on_retry_due(self, workflow_id: str) -> None:
        self._retry_timers.pop(workflow_id, None)
        self._schedule_step(workflow_id)

    def _cancel_retry_timer(self, workflow_id: str) -> None:
        handle = self._retry_timers.pop(workflow_id, None)
        if handle is not None:
            handle.cancel()

    # ========================================================================
    # Helpers
    # ========================================================================

    def _get(self, workflow_id: str) -> Workflow:
        workflow = self._workflows.get(workflow_id)
        if workflow is None:
            raise WorkflowNotFound(workflow_id)
        return workflow

    def _lock_for(self, workflow_id: str) -> asyncio.Lock:
        lock = self._locks.get(workflow_id)
        if lock is None:
            lock = self._locks[workflow_id] = asyncio.Lock()
        return lock

    async def _notify_status(self) -> None:
        async with self._status_changed:
            self._status_changed.notify_all()

    async def _persist(self, workflow: Workflow) -> None:
        """Save a snapshot. Failures are logged, in-memory state stays authoritative."""
        try:
            await self._store.save(workflow)
        except Exception as e:
            logger.error(f"Failed to persist workflow {workflow.id}: {e}")

    async def _publish(self, event: Event) -> None:
        try:
            await self._publisher.publish(event)
        except Exception as e:
            logger.warning(f"Failed to publish {event.topic} for {event.workflow_id}: {e}")

    async def _emit_workflow(
        self, topic: EventTopic, workflow: Workflow, error: str | None = None
    ) -> None:
        data: dict[str, Any] = {"workflow_id": workflow.id, "workflow": workflow.snapshot()}
        if error is not None:
            data["error"] = error
        await self._publish(Event(topic=topic.value, workflow_id=workflow.id, data=data))

    async def _emit_task(self, topic: EventTopic, workflow: Workflow, task: Task, **extra: Any) -> None:
        data: dict[str, Any] = {"workflow_id": workflow.id, "task_id": task.id, **extra}
        await self._publish(Event(topic=topic.value, workflow_id=workflow.id, data=data))
