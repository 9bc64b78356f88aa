from dataclasses import dataclass

from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import (
    MetricReader,
    PeriodicExportingMetricReader,
)
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SpanExporter
from opentelemetry.trace import Tracer

from claude_usage_metrics.exporter import INSTRUMENTATION_NAME, LoggingMetricExporter


@dataclass
class Telemetry:
    """
    Telemetry owns the OpenTelemetry meter and tracer providers of the
    process. Both export over OTLP to the same collector endpoint.
    """

    meter_provider: "MeterProvider"
    tracer_provider: "TracerProvider"

    @property
    def tracer(self) -> "Tracer":
        return self.tracer_provider.get_tracer(INSTRUMENTATION_NAME)

    def shutdown(self, timeout_seconds: "float" = 5.0) -> "None":
        """
        flushes pending metrics and spans, then stops both providers.
        Blocks, so call it from a worker thread inside the event loop.
        """
        timeout_millis = int(timeout_seconds * 1000)
        self.meter_provider.shutdown(timeout_millis=timeout_millis)
        self.tracer_provider.force_flush(timeout_millis=timeout_millis)
        self.tracer_provider.shutdown()


def setup_telemetry(
    service_name: "str",
    endpoint: "str",
    export_interval_seconds: "float" = 15.0,
    metric_reader: "MetricReader | None" = None,
    span_exporter: "SpanExporter | None" = None,
) -> "Telemetry":
    """
    builds the metric and trace pipelines tagged with service.name.
    An http:// endpoint is used in plaintext, https:// with TLS.
    """
    resource = Resource.create({SERVICE_NAME: service_name})

    if metric_reader is None:
        metric_reader = PeriodicExportingMetricReader(
            LoggingMetricExporter(OTLPMetricExporter(endpoint=endpoint)),
            export_interval_millis=export_interval_seconds * 1000,
        )
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])

    if span_exporter is None:
        span_exporter = OTLPSpanExporter(endpoint=endpoint)
    tracer_provider = TracerProvider(resource=resource)
    tracer_provider.add_span_processor(BatchSpanProcessor(span_exporter))

    return Telemetry(meter_provider=meter_provider, tracer_provider=tracer_provider)
