"""OpenTelemetry initialization and span wrappers for calendar operations."""

from __future__ import annotations

import functools
import logging
import os

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

logger = logging.getLogger(__name__)

_TRACER_NAME = "calbridge"

# Guard flag: True once the global TracerProvider has been installed.
# Prevents "Overriding of current TracerProvider is not allowed" warnings
# when init_telemetry() is called more than once in the same process.
_tracer_provider_installed: bool = False


def init_telemetry(service_name: str) -> trace.Tracer:
    """
    Initialize OpenTelemetry tracing for the process.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real TracerProvider
    with OTLP gRPC exporter on the first call. Subsequent calls reuse the
    existing provider and return a correctly-named tracer.

    Args:
        service_name: Service name for tracing (e.g., "calbridge-sync")

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
    """Get a tracer from the current provider (useful for modules)."""
    return trace.get_tracer(name)


def tag_calendar_span(
    span: trace.Span,
    *,
    provider: str | None = None,
    calendar_id: str | None = None,
    source_event_id: str | None = None,
) -> None:
    """Set calendar attribution attributes on a span, skipping unknown values."""
    if provider is not None:
        span.set_attribute("calendar.provider", provider)
    if calendar_id is not None:
        span.set_attribute("calendar.id", calendar_id)
    if source_event_id is not None:
        span.set_attribute("calendar.source_event_id", source_event_id)


class calendar_span:
    """Create an OpenTelemetry span for a calendar operation.

    Can be used as a **context manager** or as a **decorator** on async functions.

    Context manager usage::

        with calendar_span("update_event", account_address="a@example.com") as span:
            ...

    Decorator usage::

        @calendar_span("update_event")
        async def update(...):
            ...

    The span is named ``calbridge.calendar.<operation>``. Exceptions are
    recorded on the span and the span status is set to ERROR before the
    exception is re-raised.
    """

    def __init__(self, operation: str, *, account_address: str | None = None) -> None:
        self._operation = operation
        self._account_address = account_address
        self._span_name = f"calbridge.calendar.{operation}"
        self._span: trace.Span | None = None
        self._token: object | None = None

    # -- context manager protocol ------------------------------------------

    def __enter__(self) -> trace.Span:
        tracer = trace.get_tracer(_TRACER_NAME)
        self._span = tracer.start_span(self._span_name)
        if self._account_address is not None:
            self._span.set_attribute("calendar.account_address", self._account_address)
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

    # -- decorator protocol ------------------------------------------------

    def __call__(self, func):  # noqa: ANN001, ANN204
        # Each invocation gets a fresh instance so concurrent calls never
        # share _span / _token state.
        operation = self._operation
        account_address = self._account_address

        @functools.wraps(func)
        async def _wrapper(*args, **kwargs):  # noqa: ANN002, ANN003, ANN202
            with calendar_span(operation, account_address=account_address):
                return await func(*args, **kwargs)

        return _wrapper
