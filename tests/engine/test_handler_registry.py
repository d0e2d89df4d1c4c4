from typing import Any, Dict

import pytest

from agentflow.domain.errors import HandlerNotFoundError, HandlerRegistrationError
from agentflow.engine.handlers.handler_registry import build_default_registry
from agentflow.engine.registry import (
    BaseHandler,
    HandlerContext,
    HandlerMiddleware,
    HandlerRegistry,
    HandlerResult,
    MetricsMiddleware,
)


class RaisingHandler(BaseHandler):
    name = "raising"

    async def execute(self, input_data: Dict[str, Any], context: HandlerContext) -> HandlerResult:
        raise RuntimeError("handler exploded")


class NamelessHandler(RaisingHandler):
    name = ""


class TraceMiddleware(HandlerMiddleware):
    def __init__(self, label, trail):
        self.name = label
        self.trail = trail

    async def execute(self, input_data, context, next_fn):
        self.trail.append(f"{self.name}:before")
        result = await next_fn()
        self.trail.append(f"{self.name}:after")
        return result


def _ctx(step_id="s1"):
    return HandlerContext(workflow_id="wf", run_id="run", step_id=step_id)


def test_default_registry_contents():
    registry = build_default_registry()
    assert set(registry.list()) == {"noop", "delay", "http-request"}
    assert registry.has("echo")
    assert registry.get("http").name == "http-request"
    assert {"echo", "http", "noop"} <= registry.available_names()


def test_duplicate_and_unnamed_registration_fail():
    registry = build_default_registry()
    with pytest.raises(HandlerRegistrationError):
        registry.register(RaisingHandler())
        registry.register(RaisingHandler())
    with pytest.raises(HandlerRegistrationError):
        registry.register(NamelessHandler())


def test_unknown_handler_raises():
    with pytest.raises(HandlerNotFoundError):
        HandlerRegistry().get("ghost")


def test_alias_removed_with_its_handler():
    registry = build_default_registry()
    assert registry.unregister("noop")
    assert not registry.has("echo")


@pytest.mark.asyncio
async def test_noop_handler_sets_variables():
    registry = build_default_registry()
    result = await registry.execute_handler(
        "echo",
        {"step_config": {"set_variables": {"x": 1}}, "input": {"a": 2}},
        _ctx(),
    )
    assert result.success
    assert result.output["input"] == {"a": 2}
    assert result.variables == {"x": 1}


@pytest.mark.asyncio
async def test_handler_exceptions_become_failed_results():
    registry = HandlerRegistry()
    registry.register(RaisingHandler())
    result = await registry.execute_handler("raising", {}, _ctx())
    assert not result.success
    assert result.error == "handler exploded"
    assert result.error_code is None


@pytest.mark.asyncio
async def test_handler_validation_short_circuits():
    registry = build_default_registry()
    result = await registry.execute_handler("delay", {"step_config": {"duration_ms": -5}}, _ctx())
    assert not result.success
    assert result.error_code == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_middleware_runs_in_registration_order():
    trail = []
    registry = HandlerRegistry()
    registry.register(build_default_registry().get("noop"))
    registry.add_middleware(TraceMiddleware("outer", trail))
    registry.add_middleware(TraceMiddleware("inner", trail))

    await registry.execute_handler("noop", {}, _ctx())
    assert trail == ["outer:before", "inner:before", "inner:after", "outer:after"]


@pytest.mark.asyncio
async def test_metrics_middleware_counts_outcomes():
    metrics = MetricsMiddleware()
    registry = HandlerRegistry()
    registry.register(RaisingHandler())
    registry.register(build_default_registry().get("noop"))
    registry.add_middleware(metrics)

    await registry.execute_handler("noop", {}, _ctx())
    await registry.execute_handler("raising", {}, _ctx())

    assert metrics.get_metrics("noop").successful_executions == 1
    assert metrics.get_metrics("raising").failed_executions == 1
    assert registry.get_stats()["totalMiddleware"] == 1


def test_aliases_and_tag_lookup():
    registry = build_default_registry()

    assert registry.get_info("echo")["name"] == "noop"
    assert registry.get_info("delay")["hasValidator"]
    assert not registry.get_info("noop")["hasValidator"]
    assert [info["name"] for info in registry.find_by_tags(["timing"])] == ["delay"]
    assert {info["name"] for info in registry.list_with_info()} == {"noop", "delay", "http-request"}

    with pytest.raises(HandlerNotFoundError):
        registry.add_alias("pigeon", "carrier-pigeon")
    with pytest.raises(HandlerRegistrationError):
        registry.add_alias("noop", "delay")

    assert registry.remove_alias("echo")
    assert not registry.has("echo")
    assert not registry.remove_alias("echo")

    registry.clear()
    assert registry.list() == []
    assert not registry.has("http")


@pytest.mark.asyncio
async def test_http_handler_rejects_malformed_request_config():
    registry = build_default_registry()
    result = await registry.execute_handler(
        "http-request",
        {"step_config": {"url": "http://localhost/x", "headers": ["not", "a", "dict"]}},
        _ctx(),
    )
    assert not result.success
    assert result.error_code == "HANDLER_CONFIG_ERROR"
    assert result.error == "Handler configuration error for 'http-request': headers must be an object"
