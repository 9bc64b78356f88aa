from typing import Callable

import pytest
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader

from claude_usage_metrics.models import CreditsSnapshot, UsageSnapshot, UsageWindow

# (metric name, sorted attributes) -> value
Gauges = dict[tuple[str, tuple[tuple[str, str], ...]], float]


@pytest.fixture()
def metric_reader() -> "InMemoryMetricReader":
    return InMemoryMetricReader()


@pytest.fixture()
def meter_provider(metric_reader: "InMemoryMetricReader") -> "MeterProvider":
    """
    fresh meter provider per test, read back through metric_reader.
    """
    return MeterProvider(metric_readers=[metric_reader])


@pytest.fixture()
def read_gauges(metric_reader: "InMemoryMetricReader") -> "Callable[[], Gauges]":
    """
    collects once and flattens every data point of meter_provider.
    """

    def _read() -> "Gauges":
        gauges: "Gauges" = {}
        data = metric_reader.get_metrics_data()
        if data is None:
            return gauges

        for resource_metrics in data.resource_metrics:
            for scope_metrics in resource_metrics.scope_metrics:
                for metric in scope_metrics.metrics:
                    for point in metric.data.data_points:
                        attributes = tuple(sorted(dict(point.attributes).items()))
                        gauges[(metric.name, attributes)] = point.value
        return gauges

    return _read


@pytest.fixture()
def usage_snapshot() -> "UsageSnapshot":
    return UsageSnapshot(
        windows=(
            UsageWindow(name="five_hour", utilization=0.42, seconds_to_reset=1200),
            UsageWindow(name="seven_day", utilization=0.1, seconds_to_reset=86400),
        )
    )


@pytest.fixture()
def credits_snapshot() -> "CreditsSnapshot":
    return CreditsSnapshot(total=100.0, used=37.5, remaining=62.5)
