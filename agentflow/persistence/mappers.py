# agentflow/persistence/mappers.py

import json
from typing import Any, List, Optional

from agentflow.domain.models import (
    RetryPolicy,
    StepExecution,
    WorkflowCondition,
    WorkflowExecution,
    WorkflowStep,
    WorkflowTemplate,
)
from agentflow.persistence.models import (
    StepExecutionRecord,
    WorkflowRunRecord,
    WorkflowStepTemplateRecord,
    WorkflowTemplateRecord,
)
from agentflow.utils.timefmt import to_utc_naive


def dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False)


def loads(raw: Optional[str], default: Any = None) -> Any:
    if raw is None or raw == "":
        return default
    return json.loads(raw)

# ----------- templates -----------

def template_to_record(template: WorkflowTemplate) -> WorkflowTemplateRecord:
    record = WorkflowTemplateRecord(id=template.id)
    apply_template(record, template)
    return record


def apply_template(record: WorkflowTemplateRecord, template: WorkflowTemplate) -> None:
    record.name = template.name
    record.description = template.description
    record.version = template.version
    record.type = template.type
    record.category = template.category
    record.variables = dumps(template.variables)
    record.meta = dumps(template.metadata)
    record.input_schema = dumps(template.input_schema)
    record.output_schema = dumps(template.output_schema)
    record.retry_policy = dumps(template.retry_policy.model_dump()) if template.retry_policy else None
    record.timeout = template.timeout
    record.active = template.active
    record.tags = dumps(template.tags)
    record.created_at = to_utc_naive(template.created_at)
    record.updated_at = to_utc_naive(template.updated_at)


def steps_to_records(template: WorkflowTemplate) -> List[WorkflowStepTemplateRecord]:
    return [
        WorkflowStepTemplateRecord(
            template_id=template.id,
            position=position,
            step_id=step.step_id,
            name=step.name,
            description=step.description,
            type=step.type,
            handler=step.handler,
            handler_config=dumps(step.handler_config),
            step_order=step.order,
            dependencies=dumps(step.dependencies),
            conditions=dumps([c.model_dump() for c in step.conditions]),
            timeout=step.timeout,
            retries=step.retries,
            retry_delay=step.retry_delay,
            on_error=step.on_error,
        )
        for position, step in enumerate(template.steps)
    ]


def step_from_record(record: WorkflowStepTemplateRecord) -> WorkflowStep:
    return WorkflowStep(
        step_id=record.step_id,
        name=record.name,
        description=record.description,
        type=record.type,
        handler=record.handler,
        handler_config=loads(record.handler_config, {}),
        order=record.step_order,
        dependencies=loads(record.dependencies, []),
        conditions=[WorkflowCondition(**c) for c in loads(record.conditions, [])],
        timeout=record.timeout,
        retries=record.retries,
        retry_delay=record.retry_delay,
        on_error=record.on_error,
    )


def template_from_record(
    record: WorkflowTemplateRecord, step_records: List[WorkflowStepTemplateRecord]
) -> WorkflowTemplate:
    policy = loads(record.retry_policy)
    return WorkflowTemplate(
        id=record.id,
        name=record.name,
        description=record.description,
        version=record.version,
        type=record.type,
        category=record.category,
        steps=[step_from_record(s) for s in sorted(step_records, key=lambda s: s.position)],
        variables=loads(record.variables, {}),
        metadata=loads(record.meta, {}),
        input_schema=loads(record.input_schema, {}),
        output_schema=loads(record.output_schema, {}),
        retry_policy=RetryPolicy(**policy) if policy else None,
        timeout=record.timeout,
        active=bool(record.active),
        tags=loads(record.tags, []),
        created_at=record.created_at,
        updated_at=record.updated_at,
    )

# ----------- runs -----------

def apply_execution(record: WorkflowRunRecord, execution: WorkflowExecution) -> None:
    record.workflow_id = execution.workflow_id
    record.status = execution.status.value if hasattr(execution.status, "value") else execution.status
    record.current_step_id = execution.current_step_id
    record.input = dumps(execution.input)
    record.output = dumps(execution.output)
    record.variables = dumps(execution.variables)
    record.total_steps = execution.total_steps
    record.completed_steps = execution.completed_steps
    record.failed_steps = execution.failed_steps
    record.skipped_steps = execution.skipped_steps
    record.error = execution.error
    record.error_code = execution.error_code
    record.start_time = to_utc_naive(execution.start_time)
    record.end_time = to_utc_naive(execution.end_time)
    record.created_at = to_utc_naive(execution.created_at)
    record.updated_at = to_utc_naive(execution.updated_at)


def execution_to_record(execution: WorkflowExecution, seq: int = 0) -> WorkflowRunRecord:
    record = WorkflowRunRecord(id=execution.id, seq=seq)
    apply_execution(record, execution)
    return record


def execution_from_record(record: WorkflowRunRecord) -> WorkflowExecution:
    return WorkflowExecution(
        id=record.id,
        workflow_id=record.workflow_id,
        status=record.status,
        current_step_id=record.current_step_id,
        input=loads(record.input, {}),
        output=loads(record.output, {}),
        variables=loads(record.variables, {}),
        total_steps=record.total_steps,
        completed_steps=record.completed_steps,
        failed_steps=record.failed_steps,
        skipped_steps=record.skipped_steps,
        error=record.error,
        error_code=record.error_code,
        start_time=record.start_time,
        end_time=record.end_time,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )

# ----------- step executions -----------

def apply_step_execution(record: StepExecutionRecord, step: StepExecution) -> None:
    record.workflow_run_id = step.workflow_run_id
    record.step_id = step.step_id
    record.seq = step.seq
    record.status = step.status.value if hasattr(step.status, "value") else step.status
    record.attempt = step.attempt
    record.max_attempts = step.max_attempts
    record.retry_count = step.retry_count
    record.input = dumps(step.input)
    record.output = dumps(step.output)
    record.start_time = to_utc_naive(step.start_time)
    record.end_time = to_utc_naive(step.end_time)
    record.duration = step.duration
    record.error = step.error
    record.error_code = step.error_code


def step_execution_to_record(step: StepExecution) -> StepExecutionRecord:
    record = StepExecutionRecord(id=step.id)
    apply_step_execution(record, step)
    return record


def step_execution_from_record(record: StepExecutionRecord) -> StepExecution:
    return StepExecution(
        id=record.id,
        workflow_run_id=record.workflow_run_id,
        step_id=record.step_id,
        seq=record.seq,
        status=record.status,
        attempt=record.attempt,
        max_attempts=record.max_attempts,
        retry_count=record.retry_count,
        input=loads(record.input, {}),
        output=loads(record.output),
        start_time=record.start_time,
        end_time=record.end_time,
        duration=record.duration,
        error=record.error,
        error_code=record.error_code,
    )
