# agentflow/engine/handlers/builtin_handlers.py

import asyncio
from typing import Any, Dict, Optional

from agentflow.domain.validator import ValidationResult
from agentflow.engine.registry import BaseHandler, HandlerContext, HandlerResult


class NoopHandler(BaseHandler):
    """原样返回 step_config 与输入，常用于占位步骤和测试"""

    name = "noop"
    description = "Return the step configuration and run input unchanged"
    tags = ["builtin"]

    async def execute(self, input_data: Dict[str, Any], context: HandlerContext) -> HandlerResult:
        config = input_data.get("step_config") or {}
        return HandlerResult(
            success=True,
            data={"stepId": context.step_id, "config": config, "input": input_data.get("input", {})},
            variables=dict(config.get("set_variables") or {}),
        )


class DelayHandler(BaseHandler):
    name = "delay"
    description = "Sleep for step_config.duration_ms milliseconds"
    tags = ["builtin", "timing"]

    def validate(self, input_data: Dict[str, Any]) -> Optional[ValidationResult]:
        duration = (input_data.get("step_config") or {}).get("duration_ms", 0)
        if not isinstance(duration, (int, float)) or isinstance(duration, bool) or duration < 0:
            return ValidationResult(success=False, errors=["duration_ms must be a non-negative number"])
        return None

    async def execute(self, input_data: Dict[str, Any], context: HandlerContext) -> HandlerResult:
        duration = (input_data.get("step_config") or {}).get("duration_ms", 0)
        await asyncio.sleep(duration / 1000)
        return HandlerResult(success=True, data={"sleptMs": duration})
