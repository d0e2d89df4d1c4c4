from agentflow.engine.handlers.builtin_handlers import DelayHandler, NoopHandler
from agentflow.engine.handlers.http_handler import HttpRequestHandler
from agentflow.engine.registry import HandlerRegistry, LoggingMiddleware, MetricsMiddleware


def register_default_handlers(registry: HandlerRegistry) -> HandlerRegistry:
    """注册内置 handler 和默认中间件（logging 在外层，metrics 在内层）"""
    registry.register_batch([NoopHandler(), DelayHandler(), HttpRequestHandler()])
    registry.add_alias("echo", "noop")
    registry.add_alias("http", "http-request")
    registry.add_middleware(LoggingMiddleware())
    registry.add_middleware(MetricsMiddleware())
    return registry


def build_default_registry() -> HandlerRegistry:
    return register_default_handlers(HandlerRegistry())
