"""Error taxonomy for the orchestration core.

Creation and control-plane errors are raised synchronously to the caller
and never mutate the registry. Task execution errors are caught at the
task boundary and turned into state transitions.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pyconductor.models.status import WorkflowStatus


class WorkflowError(Exception):
    """Base class for all orchestration errors."""

    pass


class InvalidDefinition(WorkflowError):
    """A workflow definition failed validation.

    Attributes:
        errors: Every problem found, in discovery order
    """

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("invalid workflow definition: " + "; ".join(self.errors))


class InvalidStateTransition(WorkflowError):
    """A control operation is not allowed from the workflow's current status."""

    def __init__(self, workflow_id: str, current: WorkflowStatus, operation: str):
        self.workflow_id = workflow_id
        self.current = current
        self.operation = operation
        super().__init__(f"cannot {operation} workflow {workflow_id} in status '{current}'")


class WorkflowNotFound(WorkflowError, LookupError):
    """No workflow with the given id is registered."""

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"workflow not found: {workflow_id}")


class DependencyDeadlock(WorkflowError):
    """Tasks remain pending but none can ever become eligible."""

    def __init__(self, workflow_id: str, blocked: list[str]):
        self.workflow_id = workflow_id
        self.blocked = list(blocked)
        super().__init__(
            f"dependency deadlock in workflow {workflow_id}: "
            f"no eligible task, blocked tasks: {', '.join(self.blocked) or 'none'}"
        )


class TaskExecutionError(WorkflowError):
    """Wraps whatever a task executor raised.

    The message is the original error's message, so it can be stored on
    the task and the workflow as-is.
    """

    def __init__(self, task_id: str, attempt: int, cause: BaseException):
        self.task_id = task_id
        self.attempt = attempt
        self.cause = cause
        super().__init__(str(cause) or type(cause).__name__)


class RetryExhausted(WorkflowError):
    """A task failed on its last allowed attempt."""

    def __init__(self, task_id: str, attempts: int, last_error: str):
        self.task_id = task_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"task {task_id} failed after {attempts} attempts: {last_error}")


class UnknownTaskType(WorkflowError, LookupError):
    """No executor is registered for a task type."""

    def __init__(self, task_type: str):
        self.task_type = task_type
        super().__init__(f"no executor registered for task type: {task_type!r}")


class ControlMessageError(WorkflowError, ValueError):
    """A control-plane message is malformed (topic, workflow id or params)."""

    def __init__(self, topic: str, reason: str):
        self.topic = topic
        self.reason = reason
        super().__init__(f"invalid control message on {topic!r}: {reason}")


class InvalidParams(WorkflowError, TypeError):
    """Execution params passed to start are not a mapping."""

    def __init__(self, workflow_id: str, params: object):
        self.workflow_id = workflow_id
        super().__init__(
            f"params for workflow {workflow_id} must be a mapping, got {type(params).__name__}"
        )


class EngineClosed(WorkflowError, RuntimeError):
    """The engine was shut down and no longer drives workflows."""

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"cannot {operation} workflow: engine is shut down")
