from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span, Status, StatusCode

from voxagent.telemetry.logging import get_logger

_configured = False


def configure_tracing(service_name: str, endpoint: str | None, environment: str = "local") -> bool:
    """Install an OTLP/HTTP exporter; without an endpoint spans stay no-ops."""
    global _configured
    if _configured:
        return True
    if endpoint is None:
        return False

    resource = Resource.create({SERVICE_NAME: service_name, "deployment.environment": environment})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    get_logger(__name__).info("tracing.enabled", endpoint=endpoint, service_name=service_name)
    _configured = True
    return True


def get_tracer(name: str) -> trace.Tracer:
    return trace.get_tracer(name)


@contextmanager
def pipeline_span(
    tracer: trace.Tracer,
    stage: str,
    *,
    expected: tuple[type[BaseException], ...] = (),
    **attributes: Any,
) -> Iterator[Span]:
    """Span named `pipeline.<stage>`. Exceptions mark the span failed unless listed in `expected`."""
    with tracer.start_as_current_span(f"pipeline.{stage}", record_exception=False, set_status_on_exception=False) as span:
        span.set_attribute("pipeline.stage", stage)
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(f"pipeline.{key}", value)
        try:
            yield span
        except expected:
            span.set_attribute("pipeline.interrupted", True)
            raise
        except Exception as exc:
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR, str(exc)))
            raise


__all__ = ["configure_tracing", "get_tracer", "pipeline_span"]
