"""OpenTelemetry metrics instruments for calendar reconciliation.

Instruments are created lazily from the global MeterProvider, so callers do
not need to pass a Meter instance around.

Initialization
--------------
Call ``init_metrics(service_name)`` once during startup (alongside
``init_telemetry``).  When OTEL_EXPORTER_OTLP_ENDPOINT is not set, the global
no-op MeterProvider is used and all recordings are silent no-ops.

Instruments
-----------
  calbridge.calendar.update_total        Counter (labels: provider, outcome)
      Reconciled updates by outcome (``success`` or an error kind).

  calbridge.calendar.update_duration_ms  Histogram (label: provider)
      End-to-end duration of ``update_calendar_event`` in milliseconds.

  calbridge.calendar.provider_errors_total  Counter (labels: provider, status_code)
      Provider API failures surfaced during update or re-fetch.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "calbridge"

# ---------------------------------------------------------------------------
# MeterProvider initialization
# ---------------------------------------------------------------------------


def init_metrics(service_name: str) -> metrics.Meter:
    """Initialize OpenTelemetry metrics for the process.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real MeterProvider
    with a periodic OTLP gRPC exporter.  Otherwise, the global no-op
    MeterProvider is used and all recordings are silent.

    Args:
        service_name: The service name (e.g. "calbridge-sync").

    Returns:
        A Meter instance bound to the global MeterProvider.
    """
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op meter")
        return metrics.get_meter(_METER_NAME)

    # Import SDK/exporter only when needed to avoid hard dependency at import time
    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource

    resource = Resource.create({"service.name": service_name})
    exporter = OTLPMetricExporter(endpoint=endpoint)
    reader = PeriodicExportingMetricReader(exporter, export_interval_millis=15_000)
    provider = MeterProvider(resource=resource, metric_readers=[reader])

    metrics.set_meter_provider(provider)
    logger.info("Metrics initialized: service=%s, endpoint=%s", service_name, endpoint)

    return metrics.get_meter(_METER_NAME)


def get_meter() -> metrics.Meter:
    """Return a Meter from the current global provider.

    Safe to call before ``init_metrics``; returns a no-op meter in that case.
    """
    return metrics.get_meter(_METER_NAME)


# ---------------------------------------------------------------------------
# Calendar instruments
# ---------------------------------------------------------------------------


def _update_total() -> metrics.Counter:
    """Counter: reconciled updates (labels: provider, outcome)."""
    return get_meter().create_counter(
        name="calbridge.calendar.update_total",
        description="Total calendar event updates by provider and outcome",
        unit="updates",
    )


def _update_duration_ms() -> metrics.Histogram:
    """Histogram: end-to-end update duration in milliseconds."""
    return get_meter().create_histogram(
        name="calbridge.calendar.update_duration_ms",
        description="End-to-end calendar event update duration in milliseconds",
        unit="ms",
    )


def _provider_errors_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="calbridge.calendar.provider_errors_total",
        description="Total provider API failures during update or re-fetch",
        unit="errors",
    )


# ---------------------------------------------------------------------------
# CalendarMetrics: convenience wrapper that caches instruments
# ---------------------------------------------------------------------------


class CalendarMetrics:
    """Convenience wrapper around the calendar reconciliation metrics.

    Instruments are lazily created from the global MeterProvider on first use,
    so it is safe to construct this object before ``init_metrics`` is called
    (all recordings will be no-ops until a real provider is installed).
    """

    def __init__(self) -> None:
        self.__update_total: metrics.Counter | None = None
        self.__update_duration: metrics.Histogram | None = None
        self.__provider_errors: metrics.Counter | None = None

    # -- instrument accessors (lazy init) ------------------------------------

    @property
    def _update_total(self) -> metrics.Counter:
        if self.__update_total is None:
            self.__update_total = _update_total()
        return self.__update_total

    @property
    def _update_duration(self) -> metrics.Histogram:
        if self.__update_duration is None:
            self.__update_duration = _update_duration_ms()
        return self.__update_duration

    @property
    def _provider_errors(self) -> metrics.Counter:
        if self.__provider_errors is None:
            self.__provider_errors = _provider_errors_total()
        return self.__provider_errors

    # -- recording helpers ----------------------------------------------------

    def record_update(self, provider: str, outcome: str, duration_ms: float) -> None:
        """Count one update attempt and record how long it took."""
        self._update_total.add(1, {"provider": provider, "outcome": outcome})
        self._update_duration.record(duration_ms, {"provider": provider})

    def record_provider_error(self, provider: str, status_code: int | None) -> None:
        """Count a provider API failure; unknown status codes are labelled ``none``."""
        self._provider_errors.add(
            1,
            {"provider": provider, "status_code": str(status_code) if status_code else "none"},
        )
