"""Span helper for service operations (claim, complete, rerun...)."""

import contextlib

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from flowrun.config import ENABLE_OTEL
from flowrun.domain.errors import FlowRunError

tracer = trace.get_tracer("flowrun")


@contextlib.asynccontextmanager
async def traced_span(name: str, **attrs):
    """Span named ``name`` with ``flowrun.*`` attributes; a no-op unless tracing is on.

    Domain errors (conflicts, ineligible reruns) are recorded as events on
    the span, anything else marks it as failed. Both are re-raised.
    """
    if not ENABLE_OTEL:
        yield None
        return

    with tracer.start_as_current_span(name, record_exception=False, set_status_on_exception=False) as span:
        for k, v in attrs.items():
            if v is not None:
                span.set_attribute(f"flowrun.{k}", v)
        try:
            yield span
        except FlowRunError as exc:
            span.add_event(type(exc).__name__, {"message": str(exc)})
            raise
        except Exception as exc:
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR, str(exc)))
            raise
