# agentflow/persistence/models.py

from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text, text
)

from agentflow.persistence.database import Base

# JSON 字段统一以 TEXT 存储（json.dumps / json.loads 见 mappers）

# -----------------------
# workflow_templates
# -----------------------
class WorkflowTemplateRecord(Base):
    __tablename__ = "workflow_templates"

    id = Column(String(36), primary_key=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    version = Column(String(50), nullable=False, server_default=text("'1.0.0'"))
    type = Column(String(100), nullable=False)
    category = Column(String(100))
    variables = Column(Text)       # JSON -> TEXT
    meta = Column("metadata", Text)  # JSON -> TEXT
    input_schema = Column(Text)    # JSON -> TEXT
    output_schema = Column(Text)   # JSON -> TEXT
    retry_policy = Column(Text)    # JSON -> TEXT
    timeout = Column(Integer)
    active = Column(Boolean, nullable=False, server_default=text("1"))
    tags = Column(Text)            # JSON -> TEXT
    created_at = Column(DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP"))
    updated_at = Column(DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP"))


# -----------------------
# workflow_step_templates
# -----------------------
class WorkflowStepTemplateRecord(Base):
    __tablename__ = "workflow_step_templates"
    __table_args__ = (
        Index("idx_step_tpl_template", "template_id", "position"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    template_id = Column(String(36), ForeignKey("workflow_templates.id", ondelete="CASCADE"), nullable=False)
    position = Column(Integer, nullable=False)
    step_id = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    type = Column(String(50), nullable=False)
    handler = Column(String(255), nullable=False)
    handler_config = Column(Text)  # JSON -> TEXT
    step_order = Column(Integer, nullable=False, server_default=text("0"))
    dependencies = Column(Text)    # JSON -> TEXT
    conditions = Column(Text)      # JSON -> TEXT
    timeout = Column(Integer)
    retries = Column(Integer, nullable=False, server_default=text("0"))
    retry_delay = Column(Integer)
    on_error = Column(String(20), nullable=False, server_default=text("'halt'"))


# -----------------------
# workflow_runs
# -----------------------
class WorkflowRunRecord(Base):
    __tablename__ = "workflow_runs"
    __table_args__ = (
        Index("idx_run_workflow_status", "workflow_id", "status"),
    )

    id = Column(String(36), primary_key=True)
    workflow_id = Column(String(36), ForeignKey("workflow_templates.id"), nullable=False)
    status = Column(String(50), nullable=False)
    current_step_id = Column(String(255))
    input = Column(Text)           # JSON -> TEXT
    output = Column(Text)          # JSON -> TEXT
    variables = Column(Text)       # JSON -> TEXT
    total_steps = Column(Integer, nullable=False, server_default=text("0"))
    completed_steps = Column(Integer, nullable=False, server_default=text("0"))
    failed_steps = Column(Integer, nullable=False, server_default=text("0"))
    skipped_steps = Column(Integer, nullable=False, server_default=text("0"))
    error = Column(Text)
    error_code = Column(String(100))
    start_time = Column(DateTime)
    end_time = Column(DateTime)
    created_at = Column(DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP"))
    updated_at = Column(DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP"))
    # 同一秒内创建的 run 依靠自增序号保持顺序
    seq = Column(Integer, nullable=False, server_default=text("0"))


# -----------------------
# workflow_step_executions
# -----------------------
class StepExecutionRecord(Base):
    __tablename__ = "workflow_step_executions"
    __table_args__ = (
        Index("idx_step_exec_run_step", "workflow_run_id", "step_id"),
    )

    id = Column(String(36), primary_key=True)
    workflow_run_id = Column(String(36), ForeignKey("workflow_runs.id", ondelete="CASCADE"), nullable=False)
    step_id = Column(String(255), nullable=False)
    seq = Column(Integer, nullable=False, server_default=text("0"))
    status = Column(String(50), nullable=False)
    attempt = Column(Integer, nullable=False, server_default=text("0"))
    max_attempts = Column(Integer, nullable=False, server_default=text("1"))
    retry_count = Column(Integer, nullable=False, server_default=text("0"))
    input = Column(Text)           # JSON -> TEXT
    output = Column(Text)          # JSON -> TEXT
    start_time = Column(DateTime)
    end_time = Column(DateTime)
    duration = Column(Integer)
    error = Column(Text)
    error_code = Column(String(100))
