"""OpenTelemetry metrics instruments for the calendar synchronization engine.

Instruments are created lazily from the global MeterProvider, so callers do
not need to pass a Meter instance around.

Initialization
--------------
Call ``init_metrics(service_name)`` once during startup (alongside
``init_telemetry``).  When OTEL_EXPORTER_OTLP_ENDPOINT is not set, the SDK
falls back to a no-op MeterProvider and all recordings are silent no-ops.

Instruments
-----------
  famcal.fetch.failures_total        Counter
      Calendars whose list call failed during a fetch pass.

  famcal.reconcile.upserted_total    Counter
      Remote events written to the local store.

  famcal.reconcile.skipped_total     Counter  (label: reason=race_guard|error)
      Remote events not written back this pass.

  famcal.reconcile.pruned_total      Counter
      Local events removed because their remote copy disappeared.

  famcal.mutation.move_steps_total   Counter  (label: step, outcome)
      Move fallback chain steps (native, recover, clone) and their outcome.

  famcal.mutation.sync_errors_total  Counter  (label: action)
      Local mutations whose remote mirror failed.

All instruments carry a ``service`` label.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "famcal"


def init_metrics(service_name: str) -> metrics.Meter:
    """Initialize OpenTelemetry metrics.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real MeterProvider
    with a periodic OTLP gRPC exporter.  Otherwise, the global no-op
    MeterProvider is used and all recordings are silent.
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
    """Return a Meter from the current global provider (no-op before init)."""
    return metrics.get_meter(_METER_NAME)


class SyncMetrics:
    """Convenience wrapper caching the synchronization counters.

    Instruments are created on first use, so it is safe to construct this
    object before ``init_metrics`` is called.
    """

    def __init__(self, service_name: str = "famcal") -> None:
        self._attrs = {"service": service_name}
        self._counters: dict[str, metrics.Counter] = {}

    def _counter(self, name: str, description: str, unit: str) -> metrics.Counter:
        counter = self._counters.get(name)
        if counter is None:
            counter = get_meter().create_counter(name=name, description=description, unit=unit)
            self._counters[name] = counter
        return counter

    def fetch_failed(self, count: int = 1) -> None:
        if count:
            self._counter(
                "famcal.fetch.failures_total",
                "Calendars whose list call failed during a fetch pass",
                "calendars",
            ).add(count, self._attrs)

    def upserted(self, count: int) -> None:
        if count:
            self._counter(
                "famcal.reconcile.upserted_total",
                "Remote events written to the local store",
                "events",
            ).add(count, self._attrs)

    def skipped(self, count: int, *, reason: str) -> None:
        if count:
            self._counter(
                "famcal.reconcile.skipped_total",
                "Remote events not written back during a reconcile pass",
                "events",
            ).add(count, {**self._attrs, "reason": reason})

    def pruned(self, count: int) -> None:
        if count:
            self._counter(
                "famcal.reconcile.pruned_total",
                "Local events removed because their remote copy disappeared",
                "events",
            ).add(count, self._attrs)

    def move_step(self, step: str, *, outcome: str) -> None:
        self._counter(
            "famcal.mutation.move_steps_total",
            "Move fallback chain steps and their outcome",
            "steps",
        ).add(1, {**self._attrs, "step": step, "outcome": outcome})

    def sync_error(self, action: str) -> None:
        self._counter(
            "famcal.mutation.sync_errors_total",
            "Local mutations whose remote mirror failed",
            "mutations",
        ).add(1, {**self._attrs, "action": action})
