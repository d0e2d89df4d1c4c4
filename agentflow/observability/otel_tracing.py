"""OpenTelemetry tracer setup for the API process."""

import logging
from typing import Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from agentflow.config import ENABLE_OTEL, ENGINE_MODE, OTEL_EXPORTER_ENDPOINT

logger = logging.getLogger(__name__)


def init_tracer(service_name: str = "agentflow", endpoint: Optional[str] = None) -> Optional[TracerProvider]:
    """Install a global TracerProvider exporting over OTLP/HTTP; returns None when tracing is off."""
    if not ENABLE_OTEL:
        return None

    resource = Resource.create({
        "service.name": service_name,
        "agentflow.engine_mode": ENGINE_MODE,
    })
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint or OTEL_EXPORTER_ENDPOINT))
    )
    trace.set_tracer_provider(provider)
    logger.info(f"[Tracing] exporting spans for {service_name} to {endpoint or OTEL_EXPORTER_ENDPOINT}")
    return provider
