"""Tests for WorkflowEngine: creation, the run loop, retries and control operations."""

import asyncio

import pytest

from pyconductor import (
    EngineClosed,
    EngineConfig,
    EventPublisher,
    InMemoryEventPublisher,
    InMemoryStateStore,
    InvalidDefinition,
    InvalidParams,
    InvalidStateTransition,
    StorageError,
    WorkflowEngine,
    WorkflowNotFound,
)
from pyconductor.models import TaskStatus, WorkflowDefinition, WorkflowStatus

from conftest import chain_definition, task_def


async def run_to_end(engine: WorkflowEngine, workflow_id: str, params=None):
    await engine.start_workflow(workflow_id, params)
    return await engine.wait_for(workflow_id, timeout=2.0)


# ==============================================================================
# Creation
# ==============================================================================


@pytest.mark.asyncio
async def test_create_registers_and_persists(engine, state_store, publisher):
    definition = chain_definition("a", "b")
    definition.description = "two steps"
    definition.metadata = {"owner": "ops"}

    workflow_id = await engine.create_workflow(definition)

    workflow = engine.get_workflow(workflow_id)
    assert workflow.status == WorkflowStatus.CREATED
    assert workflow.name == "chain"
    assert workflow.description == "two steps"
    assert workflow.metadata == {"owner": "ops"}
    assert [t.id for t in workflow.tasks] == ["a", "b"]
    assert all(t.status == TaskStatus.PENDING for t in workflow.tasks)

    stored = await state_store.load(workflow_id)
    assert stored is not None
    assert stored.status == WorkflowStatus.CREATED

    assert publisher.topics(workflow_id) == ["workflow.created"]
    created = publisher.events[0]
    assert created.data["workflow_id"] == workflow_id
    assert created.data["workflow"].status == WorkflowStatus.CREATED


@pytest.mark.asyncio
async def test_create_applies_config_defaults(registry, state_store):
    config = EngineConfig(default_max_retries=7, default_retry_delay_ms=123)
    engine = WorkflowEngine(registry, state_store=state_store, config=config)
    definition = WorkflowDefinition(
        name="defaults",
        tasks=[
            task_def("a", retry_delay_ms=None),
            task_def("b", max_retries=1, retry_delay_ms=5),
        ],
    )

    workflow = engine.get_workflow(await engine.create_workflow(definition))

    assert (workflow.tasks[0].max_retries, workflow.tasks[0].retry_delay_ms) == (7, 123)
    assert (workflow.tasks[1].max_retries, workflow.tasks[1].retry_delay_ms) == (1, 5)


@pytest.mark.asyncio
async def test_create_accepts_plain_dict_and_generates_missing_ids(engine):
    workflow_id = await engine.create_workflow(
        {
            "name": "from-json",
            "tasks": [{"name": "Sleep", "type": "delay", "config": {"duration": 0}}],
        }
    )

    workflow = engine.get_workflow(workflow_id)
    assert workflow.tasks[0].id.startswith("task_")
    assert workflow.tasks[0].type == "delay"


@pytest.mark.asyncio
async def test_create_dedupes_dependencies(engine):
    definition = WorkflowDefinition(name="dupes", tasks=[task_def("a"), task_def("b", "a", "a")])
    workflow = engine.get_workflow(await engine.create_workflow(definition))
    assert workflow.get_task("b").dependencies == ["a"]


@pytest.mark.asyncio
async def test_dangling_dependency_is_rejected(engine, state_store, publisher):
    definition = WorkflowDefinition(name="dangling", tasks=[task_def("a", "X")])

    with pytest.raises(InvalidDefinition) as exc_info:
        await engine.create_workflow(definition)

    assert exc_info.value.errors == ["task 'a': depends on non-existent task 'X'"]
    assert engine.list_workflows() == []
    assert state_store.save_count == 0
    assert publisher.events == []


@pytest.mark.asyncio
async def test_unknown_task_type_is_rejected(engine):
    with pytest.raises(InvalidDefinition, match="unknown type 'ftp'"):
        await engine.create_workflow(
            {"name": "x", "tasks": [{"id": "a", "name": "A", "type": "ftp"}]}
        )


@pytest.mark.asyncio
async def test_executor_config_errors_are_rejected(engine):
    with pytest.raises(InvalidDefinition) as exc_info:
        await engine.create_workflow(
            {
                "name": "x",
                "tasks": [
                    {"id": "a", "name": "A", "type": "delay", "config": {"duration": -1}},
                    {"id": "b", "name": "B", "type": "http", "config": {}},
                ],
            }
        )

    errors = exc_info.value.errors
    assert any(e.startswith("task 'a'") and "duration" in e for e in errors)
    assert any(e.startswith("task 'b'") and "url" in e for e in errors)


@pytest.mark.asyncio
async def test_malformed_dict_is_rejected(engine):
    with pytest.raises(InvalidDefinition, match="tasks must be a list"):
        await engine.create_workflow({"name": "x", "tasks": {"a": 1}})


@pytest.mark.asyncio
async def test_mistyped_task_fields_are_rejected(engine, state_store):
    with pytest.raises(InvalidDefinition) as exc_info:
        await engine.create_workflow(
            {
                "name": "x",
                "tasks": [
                    {"id": "a", "name": "A", "type": "test", "max_retries": "2"},
                    {"id": "b", "name": "B", "type": "test", "dependencies": "a"},
                ],
            }
        )

    assert exc_info.value.errors == [
        "task 'a': max_retries must be an integer, got str",
        "task 'b': dependencies must be a list of task ids",
    ]
    assert engine.list_workflows() == []
    assert state_store.save_count == 0


@pytest.mark.asyncio
async def test_create_store_failure_leaves_registry_untouched(registry, publisher):
    class BrokenStore(InMemoryStateStore):
        async def save(self, workflow):
            raise StorageError("disk full")

    engine = WorkflowEngine(registry, state_store=BrokenStore(), publisher=publisher)

    with pytest.raises(StorageError, match="disk full"):
        await engine.create_workflow(chain_definition("a"))

    assert engine.list_workflows() == []
    assert publisher.events == []


# ==============================================================================
# Run loop
# ==============================================================================


@pytest.mark.asyncio
async def test_dependencies_run_before_dependents(engine, executor, publisher):
    # b is stored first but depends on a
    definition = WorkflowDefinition(name="pair", tasks=[task_def("b", "a"), task_def("a")])
    workflow_id = await engine.create_workflow(definition)

    final = await run_to_end(engine, workflow_id)

    assert final.status == WorkflowStatus.COMPLETED
    assert final.completed_at is not None
    assert executor.order(workflow_id) == ["a", "b"]
    assert final.results() == {"a": "a-done", "b": "b-done"}
    assert publisher.topics(workflow_id) == [
        "workflow.created",
        "workflow.started",
        "task.completed",
        "task.completed",
        "workflow.completed",
    ]


@pytest.mark.asyncio
async def test_context_carries_params_results_and_attempt(engine, executor):
    workflow_id = await engine.create_workflow(chain_definition("a", "b"))

    await run_to_end(engine, workflow_id, {"date": "2024-01-01"})

    first, second = executor.contexts
    assert first.params == {"date": "2024-01-01"}
    assert first.attempt == 1
    assert first.results == {}
    assert first.workflow.status == WorkflowStatus.RUNNING
    assert second.task_id == "b"
    assert second.results == {"a": "a-done"}


@pytest.mark.asyncio
async def test_task_results_are_stored(engine, executor):
    executor.outcomes["a"].append({"rows": 42})
    workflow_id = await engine.create_workflow(chain_definition("a"))

    final = await run_to_end(engine, workflow_id)

    task = final.get_task("a")
    assert task.status == TaskStatus.COMPLETED
    assert task.result == {"rows": 42}
    assert task.attempts == 1


@pytest.mark.asyncio
async def test_unserializable_result_fails_the_task(engine, executor, publisher):
    executor.outcomes["a"].append(x for x in [1])
    workflow_id = await engine.create_workflow(chain_definition("a", max_retries=0))

    final = await run_to_end(engine, workflow_id)

    assert final.status == WorkflowStatus.FAILED
    assert "not serializable" in final.error
    task = final.get_task("a")
    assert task.status == TaskStatus.FAILED
    assert task.result is None
    assert publisher.topics(workflow_id)[-2:] == ["task.failed", "workflow.failed"]


@pytest.mark.asyncio
async def test_completion_is_persisted(engine, state_store):
    workflow_id = await engine.create_workflow(chain_definition("a", "b"))
    await run_to_end(engine, workflow_id)

    stored = await state_store.load(workflow_id)
    assert stored.status == WorkflowStatus.COMPLETED
    assert [t.status for t in stored.tasks] == [TaskStatus.COMPLETED, TaskStatus.COMPLETED]


@pytest.mark.asyncio
async def test_task_started_events_are_opt_in(registry, publisher, executor):
    config = EngineConfig(default_retry_delay_ms=0).with_task_started_events()
    engine = WorkflowEngine(registry, publisher=publisher, config=config)
    workflow_id = await engine.create_workflow(chain_definition("a"))

    await run_to_end(engine, workflow_id)

    assert publisher.topics(workflow_id) == [
        "workflow.created",
        "workflow.started",
        "task.started",
        "task.completed",
        "workflow.completed",
    ]
    started = publisher.events_for(workflow_id)[2]
    assert started.data == {"workflow_id": workflow_id, "task_id": "a", "attempt": 1}


@pytest.mark.asyncio
async def test_store_failures_during_run_are_not_fatal(registry, publisher):
    class FlakyStore(InMemoryStateStore):
        failing = False

        async def save(self, workflow):
            if self.failing:
                raise StorageError("connection lost")
            await super().save(workflow)

    store = FlakyStore()
    engine = WorkflowEngine(registry, state_store=store, publisher=publisher)
    workflow_id = await engine.create_workflow(chain_definition("a", "b"))
    store.failing = True

    final = await run_to_end(engine, workflow_id)

    assert final.status == WorkflowStatus.COMPLETED


@pytest.mark.asyncio
async def test_publisher_failures_are_not_fatal(registry):
    class BrokenPublisher(EventPublisher):
        async def publish(self, event):
            raise ConnectionError("bus down")

    engine = WorkflowEngine(registry, publisher=BrokenPublisher())
    workflow_id = await engine.create_workflow(chain_definition("a", "b"))

    final = await run_to_end(engine, workflow_id)

    assert final.status == WorkflowStatus.COMPLETED


# ==============================================================================
# Retries
# ==============================================================================


@pytest.mark.asyncio
async def test_failed_task_is_retried_then_succeeds(engine, executor, publisher):
    executor.fail("a", times=1)
    workflow_id = await engine.create_workflow(chain_definition("a", "b", max_retries=2))

    final = await run_to_end(engine, workflow_id)

    assert final.status == WorkflowStatus.COMPLETED
    assert executor.attempts("a") == [1, 2]
    task = final.get_task("a")
    assert task.retry_count == 1
    assert task.attempts == 2
    assert task.error is None
    assert publisher.topics(workflow_id).count("task.failed") == 1


@pytest.mark.asyncio
async def test_retries_exhausted_fails_workflow(engine, executor, publisher):
    executor.fail("a", times=3, message="service unavailable")
    workflow_id = await engine.create_workflow(chain_definition("a", "b", max_retries=2))

    retry_counts = []

    def record(event):
        task = engine.get_workflow(event.workflow_id).get_task("a")
        retry_counts.append(task.retry_count)

    publisher.subscribe("task.failed", record)

    final = await run_to_end(engine, workflow_id)

    assert final.status == WorkflowStatus.FAILED
    assert final.error == "service unavailable"
    assert final.failed_at is not None
    assert executor.attempts("a") == [1, 2, 3]
    assert retry_counts == [0, 1, 2]

    task = final.get_task("a")
    assert task.status == TaskStatus.FAILED
    assert task.retry_count == 2
    assert task.error == "service unavailable"
    assert final.get_task("b").status == TaskStatus.PENDING
    assert "b" not in executor.order(workflow_id)

    topics = publisher.topics(workflow_id)
    assert topics.count("task.failed") == 3
    assert topics[-1] == "workflow.failed"
    assert publisher.events_for(workflow_id)[-1].data["error"] == "service unavailable"


@pytest.mark.asyncio
async def test_zero_retries_fails_on_first_error(engine, executor):
    executor.fail("a", times=1)
    workflow_id = await engine.create_workflow(chain_definition("a", max_retries=0))

    final = await run_to_end(engine, workflow_id)

    assert final.status == WorkflowStatus.FAILED
    assert executor.attempts("a") == [1]


@pytest.mark.asyncio
async def test_exception_without_message_uses_type_name(engine, executor):
    executor.outcomes["a"].append(KeyError())
    workflow_id = await engine.create_workflow(chain_definition("a", max_retries=0))

    final = await run_to_end(engine, workflow_id)

    assert final.error == "KeyError"


@pytest.mark.slow
@pytest.mark.asyncio
async def test_retry_waits_for_retry_delay(engine, executor):
    executor.fail("a", times=1)
    workflow_id = await engine.create_workflow(chain_definition("a", retry_delay_ms=50))

    loop = asyncio.get_running_loop()
    started = loop.time()
    final = await run_to_end(engine, workflow_id)

    assert final.status == WorkflowStatus.COMPLETED
    assert loop.time() - started >= 0.045


@pytest.mark.slow
@pytest.mark.asyncio
async def test_pending_retry_does_not_block_other_workflows(engine, executor):
    executor.fail("slow", times=1)
    slow_id = await engine.create_workflow(
        WorkflowDefinition(name="slow", tasks=[task_def("slow", retry_delay_ms=200)])
    )
    fast_id = await engine.create_workflow(chain_definition("fast1", "fast2"))

    await engine.start_workflow(slow_id)
    await engine.start_workflow(fast_id)

    fast = await engine.wait_for(fast_id, timeout=0.15)
    assert fast.status == WorkflowStatus.COMPLETED
    assert engine.get_workflow(slow_id).status == WorkflowStatus.RUNNING

    slow = await engine.wait_for(slow_id, timeout=2.0)
    assert slow.status == WorkflowStatus.COMPLETED


# ==============================================================================
# Control operations
# ==============================================================================


@pytest.mark.asyncio
async def test_unknown_workflow_raises_not_found(engine):
    with pytest.raises(WorkflowNotFound):
        await engine.start_workflow("nope")
    with pytest.raises(WorkflowNotFound):
        await engine.pause_workflow("nope")
    with pytest.raises(WorkflowNotFound):
        await engine.resume_workflow("nope")
    with pytest.raises(WorkflowNotFound):
        await engine.cancel_workflow("nope")
    with pytest.raises(WorkflowNotFound):
        engine.get_workflow("nope")
    with pytest.raises(WorkflowNotFound):
        await engine.wait_for("nope")


@pytest.mark.asyncio
async def test_start_while_running_is_rejected_without_mutation(engine, executor, state_store):
    gate = executor.gate("a")
    workflow_id = await engine.create_workflow(chain_definition("a", "b"))
    await engine.start_workflow(workflow_id, {"run": 1})
    await executor.started("a").wait()

    before = engine.get_workflow(workflow_id)
    saves = state_store.save_count

    with pytest.raises(InvalidStateTransition) as exc_info:
        await engine.start_workflow(workflow_id, {"run": 2})

    assert exc_info.value.current == WorkflowStatus.RUNNING
    after = engine.get_workflow(workflow_id)
    assert after.status == WorkflowStatus.RUNNING
    assert after.params == {"run": 1}
    assert after.updated_at == before.updated_at
    assert state_store.save_count == saves

    gate.set()
    final = await engine.wait_for(workflow_id, timeout=2.0)
    assert final.status == WorkflowStatus.COMPLETED


@pytest.mark.asyncio
async def test_start_terminal_workflow_is_rejected(engine):
    workflow_id = await engine.create_workflow(chain_definition("a"))
    await run_to_end(engine, workflow_id)

    with pytest.raises(InvalidStateTransition, match="cannot start"):
        await engine.start_workflow(workflow_id)


@pytest.mark.asyncio
@pytest.mark.parametrize("params", ["not-a-mapping", [1, 2, 3], 42])
async def test_start_with_non_mapping_params_is_rejected_without_mutation(
    engine, state_store, publisher, params
):
    workflow_id = await engine.create_workflow(chain_definition("a"))
    saves = state_store.save_count
    events = len(publisher.events)

    with pytest.raises(InvalidParams, match="must be a mapping"):
        await engine.start_workflow(workflow_id, params)

    workflow = engine.get_workflow(workflow_id)
    assert workflow.status == WorkflowStatus.CREATED
    assert workflow.started_at is None
    assert workflow.params == {}
    assert engine.running_workflows() == []
    assert state_store.save_count == saves
    assert len(publisher.events) == events

    final = await run_to_end(engine, workflow_id, {"ok": True})
    assert final.status == WorkflowStatus.COMPLETED
    assert final.params == {"ok": True}


@pytest.mark.asyncio
async def test_start_and_resume_after_shutdown_are_rejected(registry, executor, state_store):
    engine = WorkflowEngine(registry, state_store=state_store)
    created = await engine.create_workflow(chain_definition("a"))
    paused = await engine.create_workflow(chain_definition("b", "c"))

    gate = executor.gate("b")
    await engine.start_workflow(paused)
    await executor.started("b").wait()
    assert await engine.pause_workflow(paused) is True
    gate.set()
    await engine.shutdown()

    with pytest.raises(EngineClosed, match="cannot start"):
        await engine.start_workflow(created)
    with pytest.raises(EngineClosed, match="cannot resume"):
        await engine.resume_workflow(paused)

    assert engine.get_workflow(created).status == WorkflowStatus.CREATED
    assert (await state_store.load(created)).status == WorkflowStatus.CREATED
    assert (await state_store.load(paused)).status == WorkflowStatus.PAUSED
    assert engine.running_workflows() == []


@pytest.mark.asyncio
async def test_pause_lets_in_flight_task_finish(engine, executor, publisher):
    gate = executor.gate("a")
    workflow_id = await engine.create_workflow(chain_definition("a", "b"))
    await engine.start_workflow(workflow_id)
    await executor.started("a").wait()

    assert await engine.pause_workflow(workflow_id) is True
    assert engine.get_workflow(workflow_id).status == WorkflowStatus.PAUSED
    assert engine.running_workflows() == []

    gate.set()
    await publisher.wait_for("task.completed", workflow_id, timeout=2.0)
    await asyncio.sleep(0.01)

    paused = engine.get_workflow(workflow_id)
    assert paused.status == WorkflowStatus.PAUSED
    assert paused.get_task("a").status == TaskStatus.COMPLETED
    assert paused.get_task("b").status == TaskStatus.PENDING
    assert executor.order(workflow_id) == ["a"]

    assert await engine.resume_workflow(workflow_id) is True
    final = await engine.wait_for(workflow_id, timeout=2.0)
    assert final.status == WorkflowStatus.COMPLETED
    assert executor.order(workflow_id) == ["a", "b"]
    assert publisher.topics(workflow_id) == [
        "workflow.created",
        "workflow.started",
        "workflow.paused",
        "task.completed",
        "workflow.resumed",
        "task.completed",
        "workflow.completed",
    ]


@pytest.mark.asyncio
async def test_start_resumes_paused_workflow_keeping_params(engine, executor):
    gate = executor.gate("a")
    workflow_id = await engine.create_workflow(chain_definition("a", "b"))
    await engine.start_workflow(workflow_id, {"k": "v"})
    await executor.started("a").wait()
    await engine.pause_workflow(workflow_id)
    gate.set()

    await engine.start_workflow(workflow_id)
    final = await engine.wait_for(workflow_id, timeout=2.0)

    assert final.status == WorkflowStatus.COMPLETED
    assert final.params == {"k": "v"}
    assert executor.contexts[-1].params == {"k": "v"}


@pytest.mark.asyncio
async def test_in_flight_failure_while_paused_can_fail_workflow(engine, executor):
    gate = executor.gate("a")
    executor.fail("a", times=1, message="fatal")
    workflow_id = await engine.create_workflow(chain_definition("a", max_retries=0))
    await engine.start_workflow(workflow_id)
    await executor.started("a").wait()

    await engine.pause_workflow(workflow_id)
    gate.set()

    final = await engine.wait_for(workflow_id, timeout=2.0)
    assert final.status == WorkflowStatus.FAILED
    assert final.error == "fatal"


@pytest.mark.asyncio
async def test_pause_and_resume_return_false_when_not_applicable(engine):
    workflow_id = await engine.create_workflow(chain_definition("a"))

    assert await engine.pause_workflow(workflow_id) is False
    assert await engine.resume_workflow(workflow_id) is False
    assert engine.get_workflow(workflow_id).status == WorkflowStatus.CREATED


@pytest.mark.asyncio
async def test_cancel_records_in_flight_outcome_but_runs_nothing_else(
    engine, executor, publisher
):
    gate = executor.gate("a")
    workflow_id = await engine.create_workflow(chain_definition("a", "b"))
    await engine.start_workflow(workflow_id)
    await executor.started("a").wait()

    assert await engine.cancel_workflow(workflow_id) is True
    cancelled = engine.get_workflow(workflow_id)
    assert cancelled.status == WorkflowStatus.CANCELLED
    assert cancelled.cancelled_at is not None

    gate.set()
    await publisher.wait_for("task.completed", workflow_id, timeout=2.0)
    await asyncio.sleep(0.01)

    final = engine.get_workflow(workflow_id)
    assert final.status == WorkflowStatus.CANCELLED
    assert final.get_task("a").status == TaskStatus.COMPLETED
    assert final.get_task("b").status == TaskStatus.PENDING
    assert executor.order(workflow_id) == ["a"]

    assert await engine.cancel_workflow(workflow_id) is False
    assert await engine.resume_workflow(workflow_id) is False
    with pytest.raises(InvalidStateTransition):
        await engine.start_workflow(workflow_id)


@pytest.mark.asyncio
async def test_cancel_during_failing_task_schedules_no_retry(engine, executor, publisher):
    gate = executor.gate("a")
    executor.fail("a", times=1)
    workflow_id = await engine.create_workflow(chain_definition("a", max_retries=3))
    await engine.start_workflow(workflow_id)
    await executor.started("a").wait()

    await engine.cancel_workflow(workflow_id)
    gate.set()
    await publisher.wait_for("task.failed", workflow_id, timeout=2.0)
    await asyncio.sleep(0.01)

    final = engine.get_workflow(workflow_id)
    assert final.status == WorkflowStatus.CANCELLED
    assert final.get_task("a").status == TaskStatus.FAILED
    assert final.get_task("a").retry_count == 0
    assert executor.attempts("a") == [1]


@pytest.mark.asyncio
async def test_cancel_created_workflow(engine, publisher):
    workflow_id = await engine.create_workflow(chain_definition("a"))

    assert await engine.cancel_workflow(workflow_id) is True
    assert publisher.topics(workflow_id) == ["workflow.created", "workflow.cancelled"]


@pytest.mark.asyncio
async def test_wait_for_times_out(engine, executor):
    executor.gate("a")
    workflow_id = await engine.create_workflow(chain_definition("a"))
    await engine.start_workflow(workflow_id)

    with pytest.raises(TimeoutError):
        await engine.wait_for(workflow_id, timeout=0.02)

    await engine.cancel_workflow(workflow_id)
    executor.gate("a").set()


@pytest.mark.asyncio
async def test_wait_for_specific_status(engine, executor):
    executor.gate("a")
    workflow_id = await engine.create_workflow(chain_definition("a"))
    await engine.start_workflow(workflow_id)

    waiter = asyncio.create_task(engine.wait_for(workflow_id, [WorkflowStatus.PAUSED]))
    await engine.pause_workflow(workflow_id)

    snapshot = await asyncio.wait_for(waiter, timeout=1.0)
    assert snapshot.status == WorkflowStatus.PAUSED
    executor.gate("a").set()


@pytest.mark.asyncio
async def test_list_and_running_workflows(engine, executor):
    executor.gate("a")
    running_id = await engine.create_workflow(chain_definition("a"))
    idle_id = await engine.create_workflow(chain_definition("x"))
    await engine.start_workflow(running_id)

    assert {w.id for w in engine.list_workflows()} == {running_id, idle_id}
    assert [w.id for w in engine.list_workflows(WorkflowStatus.CREATED)] == [idle_id]
    assert [w.id for w in engine.running_workflows()] == [running_id]

    executor.gate("a").set()
    await engine.wait_for(running_id, timeout=2.0)
    assert engine.running_workflows() == []


@pytest.mark.asyncio
async def test_snapshots_do_not_leak_engine_state(engine):
    workflow_id = await engine.create_workflow(chain_definition("a"))

    snapshot = engine.get_workflow(workflow_id)
    snapshot.status = WorkflowStatus.FAILED
    snapshot.tasks[0].status = TaskStatus.COMPLETED

    fresh = engine.get_workflow(workflow_id)
    assert fresh.status == WorkflowStatus.CREATED
    assert fresh.tasks[0].status == TaskStatus.PENDING


@pytest.mark.asyncio
async def test_shutdown_waits_for_in_flight_task(registry, executor, state_store):
    engine = WorkflowEngine(registry, state_store=state_store)
    gate = executor.gate("a")
    workflow_id = await engine.create_workflow(chain_definition("a", "b"))
    await engine.start_workflow(workflow_id)
    await executor.started("a").wait()

    shutdown = asyncio.create_task(engine.shutdown())
    await asyncio.sleep(0.01)
    assert not shutdown.done()

    gate.set()
    await asyncio.wait_for(shutdown, timeout=2.0)

    stored = await state_store.load(workflow_id)
    assert stored.status == WorkflowStatus.RUNNING
    assert stored.get_task("a").status == TaskStatus.COMPLETED
    assert stored.get_task("b").status == TaskStatus.PENDING
    assert executor.order(workflow_id) == ["a"]


@pytest.mark.asyncio
async def test_engine_as_async_context_manager(registry):
    async with WorkflowEngine(registry, publisher=InMemoryEventPublisher()) as engine:
        workflow_id = await engine.create_workflow(chain_definition("a"))
        final = await run_to_end(engine, workflow_id)
    assert final.status == WorkflowStatus.COMPLETED


# ==============================================================================
# Concurrency
# ==============================================================================


@pytest.mark.concurrency
@pytest.mark.asyncio
async def test_at_most_one_running_task_per_workflow(engine, executor):
    ids = []
    for n in range(5):
        definition = WorkflowDefinition(
            name=f"wide-{n}", tasks=[task_def(f"w{n}-t{i}") for i in range(6)]
        )
        ids.append(await engine.create_workflow(definition))

    await asyncio.gather(*(engine.start_workflow(wid) for wid in ids))
    finals = await asyncio.gather(*(engine.wait_for(wid, timeout=2.0) for wid in ids))

    assert all(f.status == WorkflowStatus.COMPLETED for f in finals)
    assert executor.max_in_flight_per_workflow == 1
    # Tasks of independent workflows interleave
    workflows_in_call_order = [wid for wid, _, _ in executor.calls]
    assert workflows_in_call_order[:5] != [ids[0]] * 5


@pytest.mark.concurrency
@pytest.mark.asyncio
async def test_blocked_workflow_does_not_hold_up_others(engine, executor):
    gate = executor.gate("blocked")
    blocked_id = await engine.create_workflow(chain_definition("blocked"))
    free_id = await engine.create_workflow(chain_definition("f1", "f2", "f3"))

    await engine.start_workflow(blocked_id)
    await engine.start_workflow(free_id)

    free = await engine.wait_for(free_id, timeout=2.0)
    assert free.status == WorkflowStatus.COMPLETED
    assert engine.get_workflow(blocked_id).status == WorkflowStatus.RUNNING

    gate.set()
    await engine.wait_for(blocked_id, timeout=2.0)


@pytest.mark.concurrency
@pytest.mark.asyncio
async def test_rapid_pause_resume_keeps_single_driver(engine, executor):
    workflow_id = await engine.create_workflow(chain_definition(*[f"s{i}" for i in range(10)]))
    await engine.start_workflow(workflow_id)

    for _ in range(5):
        await engine.pause_workflow(workflow_id)
        await engine.resume_workflow(workflow_id)
        await asyncio.sleep(0)

    final = await engine.wait_for(workflow_id, timeout=2.0)
    assert final.status == WorkflowStatus.COMPLETED
    assert executor.order(workflow_id) == [f"s{i}" for i in range(10)]
    assert executor.max_in_flight_per_workflow == 1
