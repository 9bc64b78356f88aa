import functools
import threading
from typing import Iterable, Sequence

import structlog
from opentelemetry.metrics import CallbackOptions, MeterProvider, ObservableGauge
from opentelemetry.metrics import Observation as GaugeReading
from opentelemetry.sdk.metrics.export import (
    MetricExporter,
    MetricExportResult,
    MetricsData,
)

from claude_usage_metrics.errors import ExportFailed
from claude_usage_metrics.metrics import DESCRIPTIONS
from claude_usage_metrics.models import Observation

logger = structlog.get_logger()

INSTRUMENTATION_NAME = "claude-usage-metrics"


class GaugeExporter:
    """
    GaugeExporter exposes published observations as OpenTelemetry
    observable gauges. The SDK metric reader collects them on its own
    schedule and pushes them over OTLP, so publish() only swaps values
    in memory and never waits on the network.

    A batch replaces every value of the metric names it carries, under a
    lock shared with the reader thread, so a collection sees either the
    whole batch or none of it and windows that disappear upstream stop
    being reported.
    """

    def __init__(self, meter_provider: "MeterProvider") -> "None":
        self._meter = meter_provider.get_meter(INSTRUMENTATION_NAME)
        self._lock: "threading.Lock" = threading.Lock()
        # metric name -> attributes -> value
        self._values: "dict[str, dict[tuple[tuple[str, str], ...], float]]" = {}
        self._instruments: "dict[str, ObservableGauge]" = {}
        self.published_batches = 0

        for name in DESCRIPTIONS:
            self._ensure_instrument(name)

    def publish(self, observations: "Sequence[Observation]") -> "bool":
        """
        makes a batch the current value set for its metric names. Returns
        False if the batch was empty and therefore ignored.
        """
        if not observations:
            return False

        grouped: "dict[str, dict[tuple[tuple[str, str], ...], float]]" = {}
        for obs in observations:
            grouped.setdefault(obs.name, {})[obs.attributes] = obs.value

        for name in grouped:
            self._ensure_instrument(name)

        with self._lock:
            self._values.update(grouped)

        self.published_batches += 1
        logger.debug("export_published", observation_count=len(observations))
        return True

    def _ensure_instrument(self, name: "str") -> "None":
        if name in self._instruments:
            return

        self._instruments[name] = self._meter.create_observable_gauge(
            name,
            callbacks=[functools.partial(self._observe, name)],
            description=DESCRIPTIONS.get(name, ""),
        )

    def _observe(
        self,
        name: "str",
        options: "CallbackOptions",
    ) -> "Iterable[GaugeReading]":
        # runs on the metric reader thread
        with self._lock:
            values = list(self._values.get(name, {}).items())
        return [GaugeReading(value, dict(attributes)) for attributes, value in values]


class LoggingMetricExporter(MetricExporter):
    """
    wraps the OTLP metric exporter so a failed push is logged through
    structlog and dropped; the next collection carries fresher values.
    """

    def __init__(self, exporter: "MetricExporter") -> "None":
        super().__init__(
            preferred_temporality=exporter._preferred_temporality,
            preferred_aggregation=exporter._preferred_aggregation,
        )
        self._exporter = exporter
        self.failed_exports = 0

    def export(
        self,
        metrics_data: "MetricsData",
        timeout_millis: "float" = 10_000,
        **kwargs: "object",
    ) -> "MetricExportResult":
        try:
            self._export(metrics_data, timeout_millis, **kwargs)
        except ExportFailed as e:
            self.failed_exports += 1
            logger.error("export_failed", error=str(e))
            return MetricExportResult.FAILURE
        return MetricExportResult.SUCCESS

    def _export(
        self,
        metrics_data: "MetricsData",
        timeout_millis: "float",
        **kwargs: "object",
    ) -> "None":
        try:
            result = self._exporter.export(
                metrics_data,
                timeout_millis=timeout_millis,
                **kwargs,
            )
        except Exception as e:
            raise ExportFailed(f"metric export raised: {e}") from e

        if result is not MetricExportResult.SUCCESS:
            raise ExportFailed("collector did not accept the metric batch")

    def force_flush(self, timeout_millis: "float" = 10_000) -> "bool":
        return self._exporter.force_flush(timeout_millis=timeout_millis)

    def shutdown(self, timeout_millis: "float" = 30_000, **kwargs: "object") -> "None":
        self._exporter.shutdown(timeout_millis=timeout_millis, **kwargs)
