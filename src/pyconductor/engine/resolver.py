"""
Dependency resolution: which task runs next.

Pure functions over a workflow snapshot. Nothing here mutates the
workflow. The engine calls select_next_task() under the workflow's lock
and decides what to do when it returns None.

Tie-break: tasks are scanned in stored order, so two workflows built from
the same definition always run their tasks in the same relative order
whenever the dependencies allow more than one choice.
"""

from pyconductor.models import Task, TaskStatus, Workflow, now_ms


def is_eligible(task: Task, workflow: Workflow, at_ms: int | None = None) -> bool:
    """
    Check if a task may be selected.

    A task is eligible iff it is PENDING, not waiting for a retry deadline,
    and every dependency exists and is COMPLETED. A dependency on a missing
    task id is never satisfied.

    Args:
        task: Candidate task
        workflow: Workflow that owns the task
        at_ms: Reference time in epoch milliseconds (defaults to now)
    """
    if task.status != TaskStatus.PENDING:
        return False

    if task.is_awaiting_retry(at_ms):
        return False

    for dep_id in task.dependencies:
        dep = workflow.get_task(dep_id)
        if dep is None or dep.status != TaskStatus.COMPLETED:
            return False

    return True


def select_next_task(workflow: Workflow, at_ms: int | None = None) -> Task | None:
    """
    Return the first eligible task in stored order, or None.

    Args:
        workflow: Workflow snapshot
        at_ms: Reference time in epoch milliseconds (defaults to now)
    """
    if at_ms is None:
        at_ms = now_ms()

    for task in workflow.tasks:
        if is_eligible(task, workflow, at_ms):
            return task
    return None


def next_retry_due_ms(workflow: Workflow, at_ms: int | None = None) -> int | None:
    """
    Earliest retry deadline among tasks still waiting for one.

    Returns:
        Epoch milliseconds, or None if no task is waiting for a retry
    """
    if at_ms is None:
        at_ms = now_ms()

    deadlines = [
        task.next_retry_at_ms
        for task in workflow.tasks
        if task.is_awaiting_retry(at_ms)
    ]
    return min(deadlines) if deadlines else None


def blocked_tasks(workflow: Workflow) -> list[str]:
    """
    Ids of pending tasks that can never become eligible.

    A pending task is blocked when one of its dependencies is missing,
    failed, or itself blocked (which covers cycles).
    """
    by_id = {task.id: task for task in workflow.tasks}
    can_finish: dict[str, bool] = {}

    def reachable(task_id: str, visiting: set[str]) -> bool:
        if task_id in can_finish:
            return can_finish[task_id]

        task = by_id.get(task_id)
        if task is None or task.status == TaskStatus.FAILED:
            return False
        if task.status == TaskStatus.COMPLETED:
            return True
        if task_id in visiting:
            return False

        visiting.add(task_id)
        ok = all(reachable(dep, visiting) for dep in task.dependencies)
        visiting.discard(task_id)
        can_finish[task_id] = ok
        return ok

    return [
        task.id
        for task in workflow.tasks
        if task.status == TaskStatus.PENDING and not reachable(task.id, set())
    ]


def is_deadlocked(workflow: Workflow, at_ms: int | None = None) -> bool:
    """
    Check if the workflow can make no further progress.

    True when no task is running, nothing is eligible, no task is waiting
    for a retry, and not every task completed.
    """
    if at_ms is None:
        at_ms = now_ms()

    if workflow.all_completed():
        return False
    if workflow.running_tasks():
        return False
    if select_next_task(workflow, at_ms) is not None:
        return False
    return next_retry_due_ms(workflow, at_ms) is None


__all__ = [
    "is_eligible",
    "select_next_task",
    "next_retry_due_ms",
    "blocked_tasks",
    "is_deadlocked",
]
