# agentflow/engine/registry.py

import logging
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from agentflow.domain.errors import (
    HandlerNotFoundError,
    HandlerRegistrationError,
    WorkflowEngineError,
)
from agentflow.domain.models import utc_now
from agentflow.domain.validator import ValidationResult
from agentflow.observability.prometheus_metrics import handler_duration

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

# ----------- 执行契约 -----------

@dataclass
class HandlerContext:
    workflow_id: str
    run_id: str
    step_id: Optional[str] = None
    handler_name: Optional[str] = None
    attempt: int = 1
    input: Dict[str, Any] = field(default_factory=dict)
    variables: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class HandlerResult:
    success: bool
    data: Any = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    variables: Dict[str, Any] = field(default_factory=dict)


@dataclass
class HandlerMetadata:
    type: str
    version: str
    description: Optional[str] = None
    input_schema: Dict[str, Any] = field(default_factory=dict)
    output_schema: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StepExecutionResult:
    """Registry-level outcome; retry_count stays 0 here, retries belong to the step executor."""
    success: bool
    step_id: str
    output: Any = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    variables: Dict[str, Any] = field(default_factory=dict)
    start_time: datetime = field(default_factory=utc_now)
    end_time: datetime = field(default_factory=utc_now)
    duration: int = 0
    retry_count: int = 0


class BaseHandler(ABC):
    """
    各类步骤处理器的统一接口：execute(input, context) -> HandlerResult
    """
    name: str = ""
    version: str = "1.0.0"
    description: Optional[str] = None
    timeout: Optional[int] = None
    retries: Optional[int] = None
    tags: List[str] = []
    input_schema: Dict[str, Any] = {}
    output_schema: Dict[str, Any] = {}

    @abstractmethod
    async def execute(self, input_data: Dict[str, Any], context: HandlerContext) -> HandlerResult:
        pass

    def validate(self, input_data: Dict[str, Any]) -> Optional[ValidationResult]:
        """可选的输入校验；返回 None 表示不校验"""
        return None

    def get_metadata(self) -> HandlerMetadata:
        return HandlerMetadata(
            type=self.name,
            version=self.version,
            description=self.description,
            input_schema=dict(self.input_schema),
            output_schema=dict(self.output_schema),
        )


NextFn = Callable[[], Awaitable[HandlerResult]]


class HandlerMiddleware(ABC):
    name: str = "middleware"

    @abstractmethod
    async def execute(self, input_data: Dict[str, Any], context: HandlerContext, next_fn: NextFn) -> HandlerResult:
        pass

# ----------- registry -----------

class HandlerRegistry:
    def __init__(self):
        self._handlers: Dict[str, BaseHandler] = {}
        self._aliases: Dict[str, str] = {}
        self._middleware: List[HandlerMiddleware] = []

    def register(self, handler: BaseHandler) -> None:
        if not handler.name:
            raise HandlerRegistrationError("Handler name is required")
        if handler.name in self._handlers:
            raise HandlerRegistrationError(f"Handler '{handler.name}' already registered", handler.name)
        self._handlers[handler.name] = handler
        logger.info(f"[HandlerRegistry] registered handler '{handler.name}' v{handler.version}")

    def register_batch(self, handlers: List[BaseHandler]) -> None:
        for handler in handlers:
            self.register(handler)

    def unregister(self, name: str) -> bool:
        for alias, target in list(self._aliases.items()):
            if target == name:
                del self._aliases[alias]
        return self._handlers.pop(name, None) is not None

    def get(self, name: str) -> BaseHandler:
        handler_name = self._aliases.get(name, name)
        handler = self._handlers.get(handler_name)
        if handler is None:
            raise HandlerNotFoundError(name)
        return handler

    def has(self, name: str) -> bool:
        return name in self._handlers or name in self._aliases

    def list(self) -> List[str]:
        return list(self._handlers.keys())

    def available_names(self) -> set:
        return set(self._handlers) | set(self._aliases)

    def get_info(self, name: str) -> Dict[str, Any]:
        handler = self.get(name)
        return {
            "name": handler.name,
            "version": handler.version,
            "description": handler.description,
            "timeout": handler.timeout,
            "retries": handler.retries,
            "tags": list(handler.tags or []),
            "hasValidator": type(handler).validate is not BaseHandler.validate,
        }

    def list_with_info(self) -> List[Dict[str, Any]]:
        return [self.get_info(name) for name in self.list()]

    def find_by_tags(self, tags: List[str]) -> List[Dict[str, Any]]:
        return [info for info in self.list_with_info() if any(t in info["tags"] for t in tags)]

    def add_alias(self, alias: str, handler_name: str) -> None:
        if handler_name not in self._handlers:
            raise HandlerNotFoundError(handler_name)
        if alias in self._handlers:
            raise HandlerRegistrationError(f"Alias '{alias}' conflicts with existing handler", alias)
        self._aliases[alias] = handler_name

    def remove_alias(self, alias: str) -> bool:
        return self._aliases.pop(alias, None) is not None

    def add_middleware(self, middleware: HandlerMiddleware) -> None:
        self._middleware.append(middleware)

    async def execute_handler(
        self,
        handler_name: str,
        input_data: Dict[str, Any],
        context: HandlerContext,
    ) -> StepExecutionResult:
        """Dispatch through the middleware chain; handler errors become failed results."""
        handler = self.get(handler_name)
        step_id = context.step_id or "unknown"
        context.handler_name = handler.name

        validation = handler.validate(input_data)
        if validation is not None and not validation.success:
            now = utc_now()
            return StepExecutionResult(
                success=False,
                step_id=step_id,
                error=f"Validation failed: {', '.join(validation.errors)}",
                error_code="VALIDATION_ERROR",
                start_time=now,
                end_time=now,
            )

        async def call_handler() -> HandlerResult:
            return await handler.execute(input_data, context)

        chain: NextFn = call_handler
        # 逆序包装：第一个注册的中间件位于最外层
        for middleware in reversed(self._middleware):
            chain = _bind(middleware, input_data, context, chain)

        start_time = utc_now()
        started = time.perf_counter()
        try:
            result = await chain()
        except WorkflowEngineError as e:
            return StepExecutionResult(
                success=False,
                step_id=step_id,
                error=e.message,
                error_code=e.code,
                start_time=start_time,
                end_time=utc_now(),
                duration=_elapsed_ms(started),
            )
        except Exception as e:
            return StepExecutionResult(
                success=False,
                step_id=step_id,
                error=str(e) or type(e).__name__,
                start_time=start_time,
                end_time=utc_now(),
                duration=_elapsed_ms(started),
            )

        return StepExecutionResult(
            success=result.success,
            step_id=step_id,
            output=result.data,
            error=result.error,
            error_code=result.error_code,
            variables=dict(result.variables or {}),
            start_time=start_time,
            end_time=utc_now(),
            duration=_elapsed_ms(started),
        )

    def clear(self) -> None:
        self._handlers.clear()
        self._aliases.clear()

    def get_stats(self) -> Dict[str, Any]:
        by_tag: Dict[str, int] = defaultdict(int)
        for handler in self._handlers.values():
            for tag in handler.tags or []:
                by_tag[tag] += 1
        return {
            "totalHandlers": len(self._handlers),
            "totalAliases": len(self._aliases),
            "totalMiddleware": len(self._middleware),
            "handlersByTag": dict(by_tag),
        }


def _bind(middleware: HandlerMiddleware, input_data: Dict[str, Any], context: HandlerContext, next_fn: NextFn) -> NextFn:
    async def wrapped() -> HandlerResult:
        return await middleware.execute(input_data, context, next_fn)
    return wrapped


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)

# ----------- built-in middleware -----------

class LoggingMiddleware(HandlerMiddleware):
    name = "logging"

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logger

    async def execute(self, input_data: Dict[str, Any], context: HandlerContext, next_fn: NextFn) -> HandlerResult:
        started = time.perf_counter()
        self.log.info(
            "[Handler] started handler=%s step=%s run=%s attempt=%s",
            context.handler_name, context.step_id, context.run_id, context.attempt,
        )
        try:
            result = await next_fn()
        except Exception as e:
            self.log.error(
                "[Handler] failed handler=%s step=%s duration=%sms error=%s",
                context.handler_name, context.step_id, _elapsed_ms(started), e,
            )
            raise
        self.log.info(
            "[Handler] finished handler=%s step=%s success=%s duration=%sms has_error=%s",
            context.handler_name, context.step_id, result.success, _elapsed_ms(started), bool(result.error),
        )
        return result


@dataclass
class HandlerMetrics:
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    total_duration: int = 0
    average_duration: float = 0.0
    min_duration: Optional[int] = None
    max_duration: int = 0


class MetricsMiddleware(HandlerMiddleware):
    """按 handler 名称累计执行次数与耗时"""
    name = "metrics"

    def __init__(self):
        self._metrics: Dict[str, HandlerMetrics] = {}

    async def execute(self, input_data: Dict[str, Any], context: HandlerContext, next_fn: NextFn) -> HandlerResult:
        name = context.handler_name or context.step_id or "unknown"
        started = time.perf_counter()
        try:
            result = await next_fn()
        except Exception:
            self._record(name, _elapsed_ms(started), False)
            raise
        self._record(name, _elapsed_ms(started), result.success)
        return result

    def _record(self, name: str, duration: int, success: bool) -> None:
        m = self._metrics.setdefault(name, HandlerMetrics())
        m.total_executions += 1
        if success:
            m.successful_executions += 1
        else:
            m.failed_executions += 1
        m.total_duration += duration
        m.average_duration = m.total_duration / m.total_executions
        m.min_duration = duration if m.min_duration is None else min(m.min_duration, duration)
        m.max_duration = max(m.max_duration, duration)
        handler_duration.labels(handler=name).observe(duration / 1000)

    def get_metrics(self, handler_name: Optional[str] = None):
        if handler_name is not None:
            return self._metrics.get(handler_name)
        return dict(self._metrics)

    def clear_metrics(self) -> None:
        self._metrics.clear()
