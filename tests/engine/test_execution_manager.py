import asyncio

import pytest

from agentflow.domain.models import StepStatus, StepType, WorkflowStatus, WorkflowStep
from agentflow.engine.execution_manager import step_batches
from agentflow.events.eventbus_model import EventType

from conftest import step, template_payload


async def _create(engine, steps, **extra):
    result = await engine.create_template(template_payload(steps, **extra))
    assert result.success, result.error
    return result.data


async def _run_to_end(engine, template_id, input_data=None):
    started = await engine.start_execution(template_id, input_data or {})
    assert started.success, started.error
    await engine.executions.wait_for_background_tasks()
    return started.data.execution_id


def test_adjacent_parallel_steps_share_a_batch():
    def s(step_id, kind):
        return WorkflowStep(step_id=step_id, name=step_id, handler="noop", type=kind)

    steps = [
        s("a", StepType.ACTION.value),
        s("b", StepType.PARALLEL.value),
        s("c", StepType.PARALLEL.value),
        s("d", StepType.ACTION.value),
        s("e", StepType.PARALLEL.value),
    ]
    assert [[x.step_id for x in batch] for batch in step_batches(steps)] == [["a"], ["b", "c"], ["d"], ["e"]]


@pytest.mark.asyncio
async def test_sequential_run_completes_and_merges_variables(engine, store):
    template = await _create(engine, [
        step("a", 1, handlerConfig={"set_variables": {"region": "eu"}}),
        step("b", 2, dependencies=["a"]),
    ], variables={"seed": 1})

    run_id = await _run_to_end(engine, template.id, {"orderId": "o-1"})

    status = (await engine.get_execution_status(run_id)).data
    assert status.status == WorkflowStatus.COMPLETED
    assert status.progress == 100.0
    assert status.completed_steps == 2
    assert [s.status for s in status.step_statuses] == [StepStatus.COMPLETED, StepStatus.COMPLETED]

    execution = await store.get_execution(run_id)
    assert execution.variables == {"seed": 1, "orderId": "o-1", "region": "eu"}
    assert set(execution.output) == {"a", "b"}
    assert execution.output["b"]["input"] == {"orderId": "o-1"}
    assert execution.start_time is not None and execution.end_time is not None


@pytest.mark.asyncio
async def test_caller_input_seeds_run_variables(engine, store):
    template = await _create(engine, [
        step("gated", 1, conditions=[{"field": "variables.flag", "operator": "equals", "value": 1}]),
    ], variables={"flag": 0, "seed": 1})

    run_id = await _run_to_end(engine, template.id, {"flag": 1})

    execution = await store.get_execution(run_id)
    assert execution.variables == {"flag": 1, "seed": 1}
    assert execution.status == WorkflowStatus.COMPLETED
    assert (await store.get_step_execution(run_id, "gated")).status == StepStatus.COMPLETED


@pytest.mark.asyncio
async def test_failing_last_step_fails_the_run_after_retries(engine, store, handlers, sleeper):
    template = await _create(engine, [
        step("A", 1),
        step("B", 2, dependencies=["A"]),
        step("C", 3, handler="fail", retries=2, dependencies=["B"]),
    ])

    run_id = await _run_to_end(engine, template.id)

    execution = await store.get_execution(run_id)
    assert execution.status == WorkflowStatus.FAILED
    assert execution.completed_steps == 2
    assert execution.failed_steps == 1
    assert execution.error == "boom"
    assert execution.error_code == "STEP_EXECUTION_ERROR"

    row = await store.get_step_execution(run_id, "C")
    assert row.status == StepStatus.FAILED
    assert row.attempt == 3
    assert row.max_attempts == 3
    assert handlers["fail"].calls == 3
    assert len(sleeper.calls) == 2

    events = [e.type for e in engine.monitor.get_execution_events(run_id)]
    assert events[0] == EventType.STARTED
    assert events[-1] == EventType.FAILED
    assert events.count(EventType.STEP_RETRY) == 2


@pytest.mark.asyncio
async def test_unknown_template_creates_no_records(engine, store):
    result = await engine.start_execution("does-not-exist", {})
    assert result.error.code == "TEMPLATE_NOT_FOUND"
    assert await store.count_executions() == 0


@pytest.mark.asyncio
async def test_input_schema_is_enforced(engine, store):
    template = await _create(
        engine,
        [step("a", 1)],
        inputSchema={"type": "object", "required": ["orderId"], "properties": {"orderId": {"type": "string"}}},
    )
    result = await engine.start_execution(template.id, {"orderId": 42})
    assert result.error.code == "INPUT_VALIDATION_FAILED"
    assert result.error.details["errors"] == ["orderId: expected string, got number"]
    assert result.error.details["inputPath"] == "input"
    assert await store.count_executions() == 0


@pytest.mark.asyncio
async def test_skipped_step_blocks_its_dependants(engine, store):
    template = await _create(engine, [
        step("a", 1, conditions=[{"field": "input.send", "operator": "equals", "value": True}]),
        step("b", 2, dependencies=["a"]),
    ])

    run_id = await _run_to_end(engine, template.id, {"send": False})

    execution = await store.get_execution(run_id)
    assert execution.status == WorkflowStatus.FAILED
    assert execution.error_code == "DEPENDENCY_NOT_MET"
    assert execution.skipped_steps == 1
    assert (await store.get_step_execution(run_id, "b")).status == StepStatus.PENDING


@pytest.mark.asyncio
async def test_blocked_step_with_skip_policy_is_skipped(engine, store):
    template = await _create(engine, [
        step("a", 1, conditions=[{"field": "input.send", "operator": "equals", "value": True}]),
        step("b", 2, dependencies=["a"], onError="skip"),
        step("c", 3),
    ])

    run_id = await _run_to_end(engine, template.id, {"send": False})

    execution = await store.get_execution(run_id)
    assert execution.status == WorkflowStatus.COMPLETED
    assert execution.skipped_steps == 2
    assert execution.completed_steps == 1


@pytest.mark.asyncio
async def test_on_error_continue_keeps_the_run_going(engine, store):
    template = await _create(engine, [
        step("a", 1, handler="fail", onError="continue"),
        step("b", 2),
    ])

    run_id = await _run_to_end(engine, template.id)

    execution = await store.get_execution(run_id)
    assert execution.status == WorkflowStatus.COMPLETED
    assert execution.failed_steps == 1
    assert execution.completed_steps == 1
    assert "a" not in execution.output


@pytest.mark.asyncio
async def test_parallel_batch_failure(engine, store):
    template = await _create(engine, [
        step("p1", 1, type="parallel"),
        step("p2", 2, type="parallel", handler="fail"),
        step("after", 3),
    ])

    run_id = await _run_to_end(engine, template.id)

    execution = await store.get_execution(run_id)
    assert execution.status == WorkflowStatus.FAILED
    assert execution.error_code == "PARALLEL_EXECUTION_FAILED"
    assert execution.output == {"p1": (await store.get_step_execution(run_id, "p1")).output}
    assert (await store.get_step_execution(run_id, "after")).status == StepStatus.PENDING


@pytest.mark.asyncio
async def test_template_timeout_is_checked_between_steps(engine, store):
    template = await _create(engine, [
        step("wait", 1, handler="delay", handlerConfig={"duration_ms": 30}),
        step("never", 2),
    ], timeout=5)

    run_id = await _run_to_end(engine, template.id)

    execution = await store.get_execution(run_id)
    assert execution.status == WorkflowStatus.TIMEOUT
    assert execution.error_code == "WORKFLOW_TIMEOUT"
    assert (await store.get_step_execution(run_id, "never")).status == StepStatus.PENDING


@pytest.mark.asyncio
async def test_template_retry_policy_applies_to_steps_without_retries(engine, store, handlers):
    template = await _create(engine, [step("a", 1, handler="fail")], retryPolicy={"maxAttempts": 4, "delay": 10})

    run_id = await _run_to_end(engine, template.id)

    assert handlers["fail"].calls == 4
    assert (await store.get_step_execution(run_id, "a")).max_attempts == 4


@pytest.mark.asyncio
async def test_pause_and_resume(engine, store, handlers):
    gate = handlers["gate"]
    template = await _create(engine, [step("a", 1, handler="gate"), step("b", 2, dependencies=["a"])])
    run_id = (await engine.start_execution(template.id, {})).data.execution_id
    await asyncio.wait_for(gate.entered.wait(), timeout=2)

    paused = await engine.pause_execution(run_id)
    assert paused.data == {"executionId": run_id, "status": "paused"}
    assert (await engine.pause_execution(run_id)).error.code == "WORKFLOW_STATE_ERROR"

    gate.release.set()
    await engine.executions.wait_for_background_tasks()

    execution = await store.get_execution(run_id)
    assert execution.status == WorkflowStatus.PAUSED
    assert (await store.get_step_execution(run_id, "a")).status == StepStatus.COMPLETED
    assert (await store.get_step_execution(run_id, "b")).status == StepStatus.PENDING

    assert (await engine.resume_execution(run_id)).success
    await engine.executions.wait_for_background_tasks()

    execution = await store.get_execution(run_id)
    assert execution.status == WorkflowStatus.COMPLETED
    assert execution.completed_steps == 2
    assert (await engine.resume_execution(run_id)).error.code == "WORKFLOW_STATE_ERROR"

    events = [e.type for e in engine.monitor.get_execution_events(run_id)]
    assert EventType.PAUSED in events and EventType.RESUMED in events


@pytest.mark.asyncio
async def test_cancel_marks_pending_steps(engine, store, handlers):
    gate = handlers["gate"]
    template = await _create(engine, [step("a", 1, handler="gate"), step("b", 2)])
    run_id = (await engine.start_execution(template.id, {})).data.execution_id
    await asyncio.wait_for(gate.entered.wait(), timeout=2)

    cancelled = await engine.cancel_execution(run_id, "operator request")
    assert cancelled.data["status"] == "cancelled"

    gate.release.set()
    await engine.executions.wait_for_background_tasks()

    execution = await store.get_execution(run_id)
    assert execution.status == WorkflowStatus.CANCELLED
    assert execution.error == "operator request"
    assert (await store.get_step_execution(run_id, "b")).status == StepStatus.CANCELLED
    assert (await engine.cancel_execution(run_id)).error.code == "WORKFLOW_STATE_ERROR"


@pytest.mark.asyncio
async def test_state_changes_on_unknown_run(engine):
    for op in (engine.pause_execution, engine.resume_execution, engine.cancel_execution):
        assert (await op("nope")).error.code == "WORKFLOW_RUN_NOT_FOUND"
    assert (await engine.get_execution_status("nope")).error.code == "WORKFLOW_RUN_NOT_FOUND"


@pytest.mark.asyncio
async def test_history_and_active_executions(engine, handlers):
    gate = handlers["gate"]
    quick = await _create(engine, [step("a", 1)], name="quick")
    blocking = await _create(engine, [step("a", 1, handler="gate")], name="blocking")

    first = await _run_to_end(engine, quick.id)
    second = await _run_to_end(engine, quick.id)
    held = (await engine.start_execution(blocking.id, {})).data.execution_id
    await asyncio.wait_for(gate.entered.wait(), timeout=2)

    active = (await engine.get_active_executions()).data
    assert [e.id for e in active] == [held]
    assert engine.executions.cached_execution(held).status == WorkflowStatus.RUNNING

    history = (await engine.get_execution_history(quick.id, limit=1)).data
    assert history["total"] == 2
    assert [e.id for e in history["executions"]] == [second]
    page_two = (await engine.get_execution_history(quick.id, limit=1, offset=1)).data
    assert [e.id for e in page_two["executions"]] == [first]

    gate.release.set()
    await engine.executions.wait_for_background_tasks()
    assert (await engine.get_active_executions()).data == []
    assert engine.executions.cached_execution(held) is None
