# agentflow/domain/models.py

import uuid
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, JsonValue
from pydantic.alias_generators import to_camel

from agentflow.utils.timefmt import naive_utcnow

# -----------------------------
# JSON value bags
# -----------------------------

# Closed set of JSON shapes (str | int | float | bool | None | list | dict)
JsonDict = Dict[str, JsonValue]


def new_id() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    # 统一使用 naive UTC，与数据库列保持一致
    return naive_utcnow().replace(microsecond=0)


class DomainBase(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_json_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)

# -----------------------------
# Enums
# -----------------------------

class WorkflowStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class StepType(str, Enum):
    ACTION = "action"
    CONDITION = "condition"
    LOOP = "loop"
    PARALLEL = "parallel"
    DELAY = "delay"
    APPROVAL = "approval"


TERMINAL_WORKFLOW_STATUSES = frozenset({
    WorkflowStatus.COMPLETED,
    WorkflowStatus.FAILED,
    WorkflowStatus.CANCELLED,
    WorkflowStatus.TIMEOUT,
})

TERMINAL_STEP_STATUSES = frozenset({
    StepStatus.COMPLETED,
    StepStatus.FAILED,
    StepStatus.SKIPPED,
    StepStatus.CANCELLED,
})

STEP_TYPES = tuple(t.value for t in StepType)
ON_ERROR_POLICIES = ("continue", "halt", "retry", "skip")
CONDITION_OPERATORS = ("equals", "not_equals", "contains", "greater_than", "less_than", "exists", "not_exists")
LOGICAL_OPERATORS = ("AND", "OR")

# -----------------------------
# Template definitions
# -----------------------------

class WorkflowCondition(DomainBase):
    field: str = ""
    operator: str = ""
    value: Optional[JsonValue] = None
    logical_operator: Optional[str] = None


class RetryPolicy(DomainBase):
    max_attempts: int = 3
    delay: int = 1000
    backoff_multiplier: Optional[float] = None
    max_delay: Optional[int] = None


class WorkflowStep(DomainBase):
    """模板中的单个步骤定义（timeout / retry_delay 单位均为毫秒）"""
    step_id: str = ""
    name: str = ""
    description: Optional[str] = None
    type: str = StepType.ACTION.value
    handler: str = ""
    handler_config: JsonDict = Field(default_factory=dict)
    order: int = 0
    dependencies: List[str] = Field(default_factory=list)
    conditions: List[WorkflowCondition] = Field(default_factory=list)
    timeout: Optional[int] = None
    retries: int = 0
    retry_delay: Optional[int] = None
    on_error: str = "halt"


class WorkflowTemplate(DomainBase):
    id: str = Field(default_factory=new_id)
    name: str = ""
    description: Optional[str] = None
    version: str = "1.0.0"
    type: str = "sequential"
    category: Optional[str] = None
    steps: List[WorkflowStep] = Field(default_factory=list)
    variables: JsonDict = Field(default_factory=dict)
    metadata: JsonDict = Field(default_factory=dict)
    input_schema: JsonDict = Field(default_factory=dict)
    output_schema: JsonDict = Field(default_factory=dict)
    retry_policy: Optional[RetryPolicy] = None
    timeout: Optional[int] = None
    active: bool = True
    tags: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def get_step(self, step_id: str) -> Optional[WorkflowStep]:
        for step in self.steps:
            if step.step_id == step_id:
                return step
        return None

    def ordered_steps(self) -> List[WorkflowStep]:
        # sorted() 稳定，order 相同时保留声明顺序
        return sorted(self.steps, key=lambda s: s.order)


class CreateTemplateRequest(DomainBase):
    name: str = ""
    description: Optional[str] = None
    version: str = "1.0.0"
    type: str = "sequential"
    category: Optional[str] = None
    steps: List[WorkflowStep] = Field(default_factory=list)
    variables: JsonDict = Field(default_factory=dict)
    metadata: JsonDict = Field(default_factory=dict)
    input_schema: JsonDict = Field(default_factory=dict)
    output_schema: JsonDict = Field(default_factory=dict)
    retry_policy: Optional[RetryPolicy] = None
    timeout: Optional[int] = None
    active: bool = True
    tags: List[str] = Field(default_factory=list)

    def to_template(self, template_id: Optional[str] = None) -> WorkflowTemplate:
        data = self.model_dump()
        if template_id:
            data["id"] = template_id
        return WorkflowTemplate(**data)


class UpdateTemplateRequest(DomainBase):
    """全量更新时 steps 整体替换；未给出的字段保持原值"""
    name: Optional[str] = None
    description: Optional[str] = None
    version: Optional[str] = None
    type: Optional[str] = None
    category: Optional[str] = None
    steps: Optional[List[WorkflowStep]] = None
    variables: Optional[JsonDict] = None
    metadata: Optional[JsonDict] = None
    input_schema: Optional[JsonDict] = None
    output_schema: Optional[JsonDict] = None
    retry_policy: Optional[RetryPolicy] = None
    timeout: Optional[int] = None
    active: Optional[bool] = None
    tags: Optional[List[str]] = None

    def apply_to(self, template: WorkflowTemplate) -> WorkflowTemplate:
        changes = self.model_dump(exclude_unset=True)
        merged = template.model_dump()
        merged.update(changes)
        merged["updated_at"] = utc_now()
        return WorkflowTemplate(**merged)

# -----------------------------
# Runtime records
# -----------------------------

class WorkflowExecution(DomainBase):
    id: str = Field(default_factory=new_id)
    workflow_id: str
    status: WorkflowStatus = WorkflowStatus.PENDING
    current_step_id: Optional[str] = None
    input: JsonDict = Field(default_factory=dict)
    output: JsonDict = Field(default_factory=dict)
    variables: JsonDict = Field(default_factory=dict)
    total_steps: int = 0
    completed_steps: int = 0
    failed_steps: int = 0
    skipped_steps: int = 0
    error: Optional[str] = None
    error_code: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_WORKFLOW_STATUSES


class StepExecution(DomainBase):
    id: str = Field(default_factory=new_id)
    workflow_run_id: str
    step_id: str
    seq: int = 0
    status: StepStatus = StepStatus.PENDING
    attempt: int = 0
    max_attempts: int = 1
    retry_count: int = 0
    input: JsonDict = Field(default_factory=dict)
    output: Optional[JsonValue] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: Optional[int] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STEP_STATUSES


class StepStatusView(DomainBase):
    step_id: str
    status: StepStatus
    attempt: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration: Optional[int] = None
    error: Optional[str] = None


class ExecutionStatusView(DomainBase):
    """get_execution_status 的返回投影"""
    id: str
    template_id: str
    status: WorkflowStatus
    progress: float = 0.0
    current_step_id: Optional[str] = None
    total_steps: int = 0
    completed_steps: int = 0
    failed_steps: int = 0
    skipped_steps: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    output: JsonDict = Field(default_factory=dict)
    step_statuses: List[StepStatusView] = Field(default_factory=list)

    @classmethod
    def build(cls, execution: WorkflowExecution, steps: List[StepExecution]) -> "ExecutionStatusView":
        total = execution.total_steps or len(steps)
        done = execution.completed_steps + execution.failed_steps + execution.skipped_steps
        progress = round(done / total * 100, 2) if total else 0.0
        return cls(
            id=execution.id,
            template_id=execution.workflow_id,
            status=execution.status,
            progress=progress,
            current_step_id=execution.current_step_id,
            total_steps=total,
            completed_steps=execution.completed_steps,
            failed_steps=execution.failed_steps,
            skipped_steps=execution.skipped_steps,
            started_at=execution.start_time,
            completed_at=execution.end_time,
            error=execution.error,
            error_code=execution.error_code,
            output=execution.output,
            step_statuses=[
                StepStatusView(
                    step_id=s.step_id,
                    status=s.status,
                    attempt=s.attempt,
                    started_at=s.start_time,
                    completed_at=s.end_time,
                    duration=s.duration,
                    error=s.error,
                )
                for s in sorted(steps, key=lambda s: s.seq)
            ],
        )


class ExecutionLogEntry(DomainBase):
    timestamp: datetime
    level: str
    message: str
    step_id: Optional[str] = None
    data: JsonDict = Field(default_factory=dict)


class StartExecutionResponse(DomainBase):
    execution_id: str
    total_steps: int
