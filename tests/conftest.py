import asyncio
from typing import Any, Dict, List

import pytest
import pytest_asyncio

from agentflow.engine.handlers.handler_registry import build_default_registry
from agentflow.engine.registry import BaseHandler, HandlerContext, HandlerResult
from agentflow.events.monitor import WorkflowMonitor
from agentflow.persistence.inmemory_store import InMemoryWorkflowStore
from agentflow.service.engine_service import WorkflowEngineService

# ----------- 测试用 handler -----------

class FlakyHandler(BaseHandler):
    """前 fail_times 次失败，之后成功"""
    name = "flaky"

    def __init__(self, fail_times: int = 0):
        self.fail_times = fail_times
        self.calls = 0

    async def execute(self, input_data: Dict[str, Any], context: HandlerContext) -> HandlerResult:
        self.calls += 1
        if self.calls <= self.fail_times:
            return HandlerResult(success=False, error=f"flaky failure #{self.calls}")
        return HandlerResult(success=True, data={"calls": self.calls})


class AlwaysFailHandler(BaseHandler):
    name = "fail"

    def __init__(self):
        self.calls = 0

    async def execute(self, input_data: Dict[str, Any], context: HandlerContext) -> HandlerResult:
        self.calls += 1
        return HandlerResult(success=False, error="boom")


class SlowHandler(BaseHandler):
    name = "slow"

    async def execute(self, input_data: Dict[str, Any], context: HandlerContext) -> HandlerResult:
        await asyncio.sleep(5)
        return HandlerResult(success=True)


class GateHandler(BaseHandler):
    """阻塞到 release 被 set，用于在步骤执行中途暂停 / 取消"""
    name = "gate"

    def __init__(self):
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def execute(self, input_data: Dict[str, Any], context: HandlerContext) -> HandlerResult:
        self.entered.set()
        await self.release.wait()
        return HandlerResult(success=True, data={"released": True})


class SleepRecorder:
    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def step(step_id: str, order: int, handler: str = "noop", **extra) -> Dict[str, Any]:
    data = {"stepId": step_id, "name": f"Step {step_id}", "handler": handler, "order": order}
    data.update(extra)
    return data


def template_payload(steps: List[Dict[str, Any]], name: str = "Test Workflow", **extra) -> Dict[str, Any]:
    data = {"name": name, "description": "test template", "steps": steps}
    data.update(extra)
    return data

# ----------- fixtures -----------

@pytest.fixture
def store():
    return InMemoryWorkflowStore()


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def handlers():
    return {
        "flaky": FlakyHandler(fail_times=2),
        "fail": AlwaysFailHandler(),
        "slow": SlowHandler(),
        "gate": GateHandler(),
    }


@pytest.fixture
def registry(handlers):
    registry = build_default_registry()
    registry.register_batch(list(handlers.values()))
    return registry


@pytest_asyncio.fixture
async def engine(store, registry, sleeper):
    service = WorkflowEngineService(
        store,
        registry=registry,
        monitor=WorkflowMonitor(),
        retry_delay_ms=10,
        sleep=sleeper,
    )
    yield service
    await service.shutdown()
