# agentflow/service/mock/mock_template_factory.py

from datetime import datetime
from typing import List

from agentflow.domain.models import StepType, WorkflowStep, WorkflowTemplate


def _step(step_id: str, name: str, kind: str, handler: str, order: int, timeout: int, retries: int,
          dependencies=None, step_type: str = StepType.ACTION.value) -> WorkflowStep:
    return WorkflowStep(
        step_id=step_id,
        name=name,
        type=step_type,
        handler=handler,
        handler_config={"kind": kind},
        order=order,
        dependencies=dependencies or [],
        timeout=timeout,
        retries=retries,
    )


class MockTemplateFactory:
    """两个固定的示例模板，供 Mock 引擎启动时预置"""

    def create_sample_templates(self) -> List[WorkflowTemplate]:
        return [
            self.create_data_processing_template(),
            self.create_email_notification_template(),
        ]

    def create_data_processing_template(self) -> WorkflowTemplate:
        return WorkflowTemplate(
            id="template_001",
            name="Data Processing Pipeline",
            description="Process incoming data through validation and transformation",
            category="data",
            steps=[
                _step("step_001", "Validate Input", "validation", "input-validator", 1, 30000, 3),
                _step("step_002", "Transform Data", "transformation", "data-transformer", 2, 60000, 2,
                      dependencies=["step_001"]),
                _step("step_003", "Save to Database", "storage", "database-query", 3, 30000, 5,
                      dependencies=["step_002"]),
            ],
            variables={"inputSource": "api", "outputFormat": "json", "batchSize": 100},
            tags=["sample", "data"],
            created_at=datetime(2024, 1, 15),
            updated_at=datetime(2024, 1, 20),
        )

    def create_email_notification_template(self) -> WorkflowTemplate:
        return WorkflowTemplate(
            id="template_002",
            name="Email Notification Pipeline",
            description="Send notifications based on triggers",
            category="notification",
            steps=[
                _step("step_101", "Check Conditions", "condition", "condition-evaluator", 1, 10000, 1,
                      step_type=StepType.CONDITION.value),
                _step("step_102", "Prepare Email Content", "preparation", "template-processor", 2, 15000, 2,
                      dependencies=["step_101"]),
                _step("step_103", "Send Email", "notification", "email-notification", 3, 30000, 3,
                      dependencies=["step_102"]),
            ],
            variables={
                "recipients": ["admin@company.com"],
                "template": "default-notification",
                "priority": "normal",
            },
            tags=["sample", "notification"],
            created_at=datetime(2024, 1, 16),
            updated_at=datetime(2024, 1, 16),
        )
