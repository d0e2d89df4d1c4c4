"""Span helpers for step dispatch."""

import contextlib

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from agentflow.config import ENABLE_OTEL

# span 属性统一加前缀，便于在后端按 agentflow.* 过滤
ATTRIBUTE_PREFIX = "agentflow."


@contextlib.asynccontextmanager
async def traced_span(name: str, **attrs):
    """Open a span around a step attempt; no-op unless ENABLE_OTEL is set.

    None-valued attributes are dropped.  An exception escaping the block is
    recorded on the span and re-raised.
    """
    if not ENABLE_OTEL:
        yield None
        return

    tracer = trace.get_tracer("agentflow.engine")
    with tracer.start_as_current_span(name, record_exception=False, set_status_on_exception=False) as span:
        for k, v in attrs.items():
            if v is not None:
                span.set_attribute(f"{ATTRIBUTE_PREFIX}{k}", v)
        try:
            yield span
        except Exception as e:
            span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR, str(e)))
            raise
