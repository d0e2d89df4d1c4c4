import pytest
import pytest_asyncio

from agentflow.domain.models import (
    RetryPolicy,
    StepExecution,
    StepStatus,
    WorkflowExecution,
    WorkflowStatus,
    WorkflowStep,
    WorkflowTemplate,
)
from agentflow.persistence.database import build_engine, build_session_factory, create_schema
from agentflow.persistence.sql_store import SqlWorkflowStore
from agentflow.service.engine_service import WorkflowEngineService

from conftest import step, template_payload


@pytest_asyncio.fixture
async def sql_store(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'agentflow.db'}")
    await create_schema(engine)
    yield SqlWorkflowStore(build_session_factory(engine))
    await engine.dispose()


def _template(**extra):
    return WorkflowTemplate(
        name="Persisted",
        steps=[
            WorkflowStep(step_id="a", name="A", handler="noop", order=1,
                         conditions=[{"field": "input.x", "operator": "exists"}]),
            WorkflowStep(step_id="b", name="B", handler="noop", order=2, dependencies=["a"], retries=2),
        ],
        variables={"k": [1, 2]},
        tags=["t1"],
        retry_policy=RetryPolicy(max_attempts=2),
        **extra,
    )


@pytest.mark.asyncio
async def test_template_round_trip(sql_store):
    template = _template(timeout=60000)
    await sql_store.create_template(template)

    loaded = await sql_store.get_template(template.id)
    assert loaded.name == "Persisted"
    assert [s.step_id for s in loaded.steps] == ["a", "b"]
    assert loaded.steps[1].dependencies == ["a"]
    assert loaded.steps[0].conditions[0].operator == "exists"
    assert loaded.variables == {"k": [1, 2]}
    assert loaded.retry_policy.max_attempts == 2
    assert loaded.timeout == 60000

    loaded.steps = loaded.steps[:1]
    loaded.name = "Renamed"
    await sql_store.update_template(loaded)
    again = await sql_store.get_template(template.id)
    assert again.name == "Renamed"
    assert [s.step_id for s in again.steps] == ["a"]

    assert [t.id for t in await sql_store.list_templates(active=True)] == [template.id]
    assert await sql_store.delete_template(template.id)
    assert await sql_store.get_template(template.id) is None


@pytest.mark.asyncio
async def test_execution_and_step_rows(sql_store):
    template = _template()
    await sql_store.create_template(template)

    execution = WorkflowExecution(workflow_id=template.id, input={"x": 1}, total_steps=2)
    rows = [
        StepExecution(workflow_run_id=execution.id, step_id="a", seq=0),
        StepExecution(workflow_run_id=execution.id, step_id="b", seq=1, max_attempts=3),
    ]
    await sql_store.create_execution(execution, rows)

    updated = await sql_store.update_execution(execution.id, status=WorkflowStatus.RUNNING, current_step_id="a")
    assert updated.status == WorkflowStatus.RUNNING
    await sql_store.update_step_execution(execution.id, "a", status=StepStatus.COMPLETED, output={"ok": True})

    loaded = await sql_store.get_execution(execution.id)
    assert loaded.status == WorkflowStatus.RUNNING
    assert loaded.input == {"x": 1}
    assert loaded.current_step_id == "a"

    step_rows = await sql_store.list_step_executions(execution.id)
    assert [(r.step_id, r.status) for r in step_rows] == [("a", StepStatus.COMPLETED), ("b", StepStatus.PENDING)]
    assert step_rows[0].output == {"ok": True}
    assert step_rows[1].max_attempts == 3

    assert await sql_store.count_executions(workflow_id=template.id, statuses=[WorkflowStatus.RUNNING]) == 1
    assert await sql_store.count_executions(statuses=[WorkflowStatus.COMPLETED]) == 0
    assert await sql_store.update_execution("missing", status=WorkflowStatus.FAILED) is None
    assert await sql_store.get_step_execution(execution.id, "zzz") is None

    assert await sql_store.delete_execution(execution.id)
    assert await sql_store.list_step_executions(execution.id) == []


@pytest.mark.asyncio
async def test_engine_runs_against_sql_store(sql_store, registry, sleeper):
    service = WorkflowEngineService(sql_store, registry=registry, sleep=sleeper)
    template = (await service.create_template(template_payload([step("a", 1), step("b", 2, dependencies=["a"])]))).data

    run_id = (await service.start_execution(template.id, {"n": 1})).data.execution_id
    await service.shutdown()

    status = (await service.get_execution_status(run_id)).data
    assert status.status == WorkflowStatus.COMPLETED
    assert status.completed_steps == 2

    history = (await service.get_execution_history(template.id)).data
    assert history["total"] == 1
    assert history["executions"][0].id == run_id
