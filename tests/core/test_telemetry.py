"""Tests for calbridge.core.telemetry: OpenTelemetry initialization and spans."""

import pytest
from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

import calbridge.core.telemetry as _telemetry_mod
from calbridge.core.telemetry import calendar_span, init_telemetry, tag_calendar_span

pytestmark = pytest.mark.unit


def _reset_otel_global_state():
    """Fully reset the OpenTelemetry global tracer provider state."""
    trace._TRACER_PROVIDER_SET_ONCE = trace.Once()
    trace._TRACER_PROVIDER = None
    _telemetry_mod._tracer_provider_installed = False


@pytest.fixture(autouse=True)
def _clean_tracer_provider():
    _reset_otel_global_state()
    yield
    _reset_otel_global_state()


@pytest.fixture
def exporter():
    exporter = InMemorySpanExporter()
    provider = TracerProvider(resource=Resource.create({"service.name": "calbridge-test"}))
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    yield exporter
    provider.shutdown()


class TestInitTelemetry:
    def test_noop_when_endpoint_not_set(self, monkeypatch):
        monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)
        tracer = init_telemetry("calbridge-test")
        with tracer.start_as_current_span("op") as span:
            assert span is not None
        assert _telemetry_mod._tracer_provider_installed is False

    def test_installs_provider_with_service_name(self, monkeypatch):
        monkeypatch.setenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://localhost:4317")
        init_telemetry("calbridge-sync")

        provider = trace.get_tracer_provider()
        assert isinstance(provider, TracerProvider)
        assert provider.resource.attributes["service.name"] == "calbridge-sync"
        provider.shutdown()

    def test_second_init_reuses_provider(self, monkeypatch):
        monkeypatch.setenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://localhost:4317")
        init_telemetry("calbridge-a")
        first = trace.get_tracer_provider()
        assert init_telemetry("calbridge-b") is not None
        assert trace.get_tracer_provider() is first
        first.shutdown()


class TestCalendarSpan:
    def test_context_manager_names_span_and_tags_account(self, exporter):
        with calendar_span("update_event", account_address="acct@example.com") as span:
            tag_calendar_span(span, provider="google", calendar_id="primary")

        (finished,) = exporter.get_finished_spans()
        assert finished.name == "calbridge.calendar.update_event"
        assert finished.attributes["calendar.account_address"] == "acct@example.com"
        assert finished.attributes["calendar.provider"] == "google"
        assert finished.attributes["calendar.id"] == "primary"
        assert "calendar.source_event_id" not in finished.attributes

    def test_exception_recorded_and_reraised(self, exporter):
        with pytest.raises(RuntimeError, match="boom"):
            with calendar_span("update_event"):
                raise RuntimeError("boom")

        (finished,) = exporter.get_finished_spans()
        assert finished.status.status_code == trace.StatusCode.ERROR
        assert finished.events[0].name == "exception"

    async def test_decorator_creates_span_per_call(self, exporter):
        @calendar_span("get_events")
        async def fetch(value):
            return value * 2

        assert await fetch(2) == 4
        assert await fetch(3) == 6
        spans = exporter.get_finished_spans()
        assert [s.name for s in spans] == ["calbridge.calendar.get_events"] * 2
