"""OpenTelemetry tracer setup for the run engine."""

import logging

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter

from flowrun.config import ENABLE_OTEL, ENV, OTEL_EXPORTER, OTEL_EXPORTER_ENDPOINT

logger = logging.getLogger(__name__)


def init_tracer(service_name: str = "flowrun") -> bool:
    """Install a tracer provider when ENABLE_OTEL is set; returns whether it did."""
    if not ENABLE_OTEL:
        return False

    resource = Resource.create({
        "service.name": service_name,
        "deployment.environment": ENV,
    })
    provider = TracerProvider(resource=resource)

    if OTEL_EXPORTER == "console":
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    else:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=OTEL_EXPORTER_ENDPOINT)))

    trace.set_tracer_provider(provider)
    logger.info("[Tracing] %s exporter enabled for %s", OTEL_EXPORTER, service_name)
    return True
