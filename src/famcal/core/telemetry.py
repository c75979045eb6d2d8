"""OpenTelemetry initialization, span wrappers, and trace context propagation for famcal."""

from __future__ import annotations

import functools
import logging
import os

from opentelemetry import trace
from opentelemetry.propagate import inject
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

logger = logging.getLogger(__name__)

_TRACER_NAME = "famcal"

# Guard flag: True once the global TracerProvider has been installed.
_tracer_provider_installed: bool = False


def init_telemetry(service_name: str) -> trace.Tracer:
    """Initialize OpenTelemetry tracing.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real TracerProvider
    with an OTLP gRPC exporter on the first call. Without it the global no-op
    provider stays in place and every span is free.

    Args:
        service_name: Service name recorded on the tracer resource.

    Returns:
        A Tracer instance (real or no-op depending on config)
    """
    global _tracer_provider_installed

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op tracer")
        return trace.get_tracer(service_name)

    if _tracer_provider_installed:
        logger.debug(
            "TracerProvider already initialized; reusing existing provider for service=%s",
            service_name,
        )
        return trace.get_tracer(service_name)

    # Import exporter only when needed
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)

    exporter = OTLPSpanExporter(endpoint=endpoint)
    provider.add_span_processor(BatchSpanProcessor(exporter))

    trace.set_tracer_provider(provider)
    _tracer_provider_installed = True
    logger.info("Telemetry initialized: endpoint=%s", endpoint)

    return trace.get_tracer(service_name)


def get_tracer(name: str = _TRACER_NAME) -> trace.Tracer:
    """Get a tracer from the current provider."""
    return trace.get_tracer(name)


class sync_span:
    """Create an OpenTelemetry span around one synchronization step.

    Can be used as a **context manager** or as a **decorator** on async functions::

        with sync_span("fetch.calendar", household_id=hid, calendar_id=cid):
            ...

        @sync_span("reconcile")
        async def reconcile(...): ...

    The span is named ``famcal.<step>``. Keyword attributes with a ``None``
    value are omitted. Exceptions are recorded on the span and the span
    status is set to ERROR before the exception is re-raised.
    """

    def __init__(self, step: str, **attributes: str | int | bool | None) -> None:
        self._step = step
        self._attributes = attributes
        self._span_name = f"famcal.{step}"
        self._span: trace.Span | None = None
        self._token: object | None = None

    def __enter__(self) -> trace.Span:
        tracer = trace.get_tracer(_TRACER_NAME)
        self._span = tracer.start_span(self._span_name)
        for key, value in self._attributes.items():
            if value is not None:
                self._span.set_attribute(f"famcal.{key}", value)
        self._token = trace.context_api.attach(trace.set_span_in_context(self._span))
        return self._span

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        if self._span is None:
            return
        if exc_val is not None:
            self._span.set_status(trace.StatusCode.ERROR, str(exc_val))
            self._span.record_exception(exc_val)
        self._span.end()
        if self._token is not None:
            trace.context_api.detach(self._token)

    def __call__(self, func):  # noqa: ANN001, ANN204
        # Each invocation gets its own context manager so concurrent calls do
        # not share span state.
        step = self._step
        attributes = dict(self._attributes)

        @functools.wraps(func)
        async def _wrapper(*args, **kwargs):  # noqa: ANN002, ANN003, ANN202
            with sync_span(step, **attributes):
                return await func(*args, **kwargs)

        return _wrapper


def inject_trace_context() -> dict[str, str]:
    """Inject the current trace context into a dict using W3C Trace Context format.

    The result is suitable as extra HTTP headers on outbound requests. If
    there is no active valid span, the returned dict may be empty.
    """
    carrier: dict[str, str] = {}
    inject(carrier)
    return carrier
