import asyncio
import time
from typing import Callable

import httpx
import pytest
import respx
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import (
    InMemorySpanExporter,
)
from opentelemetry.trace import StatusCode
from structlog.testing import capture_logs

from claude_usage_metrics.collector import Collector
from claude_usage_metrics.credentials import BrokerCredentialSource, CredentialCache
from claude_usage_metrics.errors import (
    AuthExpired,
    CredentialUnavailable,
    MalformedResponse,
    UpstreamUnavailable,
)
from claude_usage_metrics.exporter import GaugeExporter
from claude_usage_metrics.models import (
    Credential,
    CreditsSnapshot,
    Observation,
    UsageSnapshot,
)
from claude_usage_metrics.provider.claude import CLAUDE_BASE_URL, ClaudeUsageProvider
from claude_usage_metrics.provider.openrouter import (
    OPENROUTER_BASE_URL,
    OpenRouterCreditsProvider,
)


class MockCredentialSource:
    """
    A credential source that hands out numbered cookies.
    """

    def __init__(self, error: "Exception | None" = None) -> "None":
        self._error = error
        self.calls = 0

    async def fetch_credential(self, organization_id: "str") -> "Credential":
        self.calls += 1
        if self._error is not None:
            raise self._error
        return Credential(
            organization_id=organization_id,
            token=f"cookie-{self.calls}",
        )


class MockUsageProvider:
    """
    A usage provider that returns a pre-configured snapshot, or
    raises the queued errors first.
    """

    def __init__(
        self,
        snapshot: "UsageSnapshot",
        errors: "list[Exception] | None" = None,
        delay: "float" = 0.0,
    ) -> "None":
        self._snapshot = snapshot
        self._errors = list(errors or [])
        self._delay = delay
        self.tokens: "list[str]" = []

    @property
    def name(self) -> "str":
        return "mock-usage"

    async def fetch_usage(self, credential: "Credential") -> "UsageSnapshot":
        self.tokens.append(credential.token)
        await asyncio.sleep(self._delay)
        if self._errors:
            raise self._errors.pop(0)
        return self._snapshot

    async def close(self) -> "None":
        pass


class MockCreditsProvider:
    """
    A credits provider that returns a pre-configured snapshot or raises.
    """

    def __init__(
        self,
        snapshot: "CreditsSnapshot | None" = None,
        error: "Exception | None" = None,
        delay: "float" = 0.0,
    ) -> "None":
        self._snapshot = snapshot
        self._error = error
        self._delay = delay

    @property
    def name(self) -> "str":
        return "mock-credits"

    async def fetch_credits(self) -> "CreditsSnapshot":
        await asyncio.sleep(self._delay)
        if self._error is not None:
            raise self._error
        return self._snapshot

    async def close(self) -> "None":
        pass


class RecordingSink:
    def __init__(self) -> "None":
        self.batches: "list[list[Observation]]" = []

    def publish(self, observations: "list[Observation]") -> "bool":
        self.batches.append(list(observations))
        return True


def _collector(
    usage: "MockUsageProvider",
    credits: "MockCreditsProvider | None",
    sink: "RecordingSink",
    source: "MockCredentialSource | None" = None,
    **kwargs: "object",
) -> "Collector":
    cache = CredentialCache(source or MockCredentialSource(), ttl_seconds=300)
    return Collector(usage, cache, "org-1", sink, credits_provider=credits, **kwargs)


def _names(batch: "list[Observation]") -> "set[str]":
    return {o.name for o in batch}


class TestRunCycle:
    @pytest.mark.asyncio
    async def test_collects_usage_and_credits(
        self,
        usage_snapshot: "UsageSnapshot",
        credits_snapshot: "CreditsSnapshot",
    ) -> "None":
        sink = RecordingSink()
        collector = _collector(
            MockUsageProvider(usage_snapshot),
            MockCreditsProvider(credits_snapshot),
            sink,
        )

        report = await collector.run_cycle()

        assert report.published is True
        assert report.observation_count == 7
        assert {o.source: o.status for o in report.outcomes} == {
            "usage": "ok",
            "credits": "ok",
        }
        # one batch per source
        assert sorted(len(batch) for batch in sink.batches) == [3, 4]

    @pytest.mark.asyncio
    async def test_credits_failure_keeps_usage(
        self,
        usage_snapshot: "UsageSnapshot",
    ) -> "None":
        sink = RecordingSink()
        collector = _collector(
            MockUsageProvider(usage_snapshot),
            MockCreditsProvider(error=UpstreamUnavailable("502")),
            sink,
        )

        report = await collector.run_cycle()

        assert report.observation_count == 4
        assert _names(sink.batches[0]) == {
            "claude.usage.utilization",
            "claude.usage.seconds_to_reset",
        }
        statuses = {o.source: o.status for o in report.outcomes}
        assert statuses["credits"] == "failed:UpstreamUnavailable"

    @pytest.mark.asyncio
    async def test_usage_failure_keeps_credits(
        self,
        usage_snapshot: "UsageSnapshot",
        credits_snapshot: "CreditsSnapshot",
    ) -> "None":
        sink = RecordingSink()
        collector = _collector(
            MockUsageProvider(
                usage_snapshot,
                errors=[MalformedResponse("bad", payload_size=12)],
            ),
            MockCreditsProvider(credits_snapshot),
            sink,
        )

        report = await collector.run_cycle()

        assert report.observation_count == 3
        assert all(o.name.startswith("openrouter.") for o in sink.batches[0])

    @pytest.mark.asyncio
    async def test_unexpected_error_is_contained(
        self,
        usage_snapshot: "UsageSnapshot",
    ) -> "None":
        sink = RecordingSink()
        collector = _collector(
            MockUsageProvider(usage_snapshot),
            MockCreditsProvider(error=KeyError("total")),
            sink,
        )

        report = await collector.run_cycle()

        assert report.observation_count == 4
        statuses = {o.source: o.status for o in report.outcomes}
        assert statuses["credits"] == "failed:KeyError"

    @pytest.mark.asyncio
    async def test_credits_disabled(self, usage_snapshot: "UsageSnapshot") -> "None":
        sink = RecordingSink()
        collector = _collector(MockUsageProvider(usage_snapshot), None, sink)

        report = await collector.run_cycle()

        assert report.observation_count == 4
        statuses = {o.source: o.status for o in report.outcomes}
        assert statuses == {"usage": "ok", "credits": "disabled"}

    @pytest.mark.asyncio
    async def test_empty_cycle_publishes_nothing(
        self,
        usage_snapshot: "UsageSnapshot",
    ) -> "None":
        sink = RecordingSink()
        collector = _collector(
            MockUsageProvider(usage_snapshot),
            MockCreditsProvider(error=UpstreamUnavailable("down")),
            sink,
            source=MockCredentialSource(error=CredentialUnavailable("no cookie")),
        )

        report = await collector.run_cycle()

        assert report.observation_count == 0
        assert report.published is False
        assert sink.batches == []
        statuses = {o.source: o.status for o in report.outcomes}
        assert statuses["usage"] == "failed:CredentialUnavailable"

    @pytest.mark.asyncio
    async def test_fetches_run_concurrently(
        self,
        usage_snapshot: "UsageSnapshot",
        credits_snapshot: "CreditsSnapshot",
    ) -> "None":
        sink = RecordingSink()
        collector = _collector(
            MockUsageProvider(usage_snapshot, delay=0.5),
            MockCreditsProvider(credits_snapshot, delay=0.3),
            sink,
        )

        report = await collector.run_cycle()

        # sequential fetches would take at least 0.8s
        assert 0.45 <= report.duration_seconds < 0.7
        assert report.observation_count == 7

    @pytest.mark.asyncio
    async def test_slow_fetch_times_out(
        self,
        usage_snapshot: "UsageSnapshot",
        credits_snapshot: "CreditsSnapshot",
    ) -> "None":
        sink = RecordingSink()
        collector = _collector(
            MockUsageProvider(usage_snapshot),
            MockCreditsProvider(credits_snapshot, delay=5),
            sink,
            fetch_timeout_seconds=0.1,
        )

        report = await collector.run_cycle()

        assert report.duration_seconds < 1
        assert report.observation_count == 4
        statuses = {o.source: o.status for o in report.outcomes}
        assert statuses["credits"] == "failed:UpstreamUnavailable"

    @pytest.mark.asyncio
    async def test_credential_is_reused_across_cycles(
        self,
        usage_snapshot: "UsageSnapshot",
    ) -> "None":
        source = MockCredentialSource()
        usage = MockUsageProvider(usage_snapshot)
        collector = _collector(usage, None, RecordingSink(), source=source)

        await collector.run_cycle()
        await collector.run_cycle()

        assert source.calls == 1
        assert usage.tokens == ["cookie-1", "cookie-1"]


class TestAuthRetry:
    @pytest.mark.asyncio
    async def test_next_cycle_policy_refreshes_on_next_tick(
        self,
        usage_snapshot: "UsageSnapshot",
    ) -> "None":
        source = MockCredentialSource()
        usage = MockUsageProvider(usage_snapshot, errors=[AuthExpired("401")])
        collector = _collector(usage, None, RecordingSink(), source=source)

        first = await collector.run_cycle()
        assert first.observation_count == 0
        assert usage.tokens == ["cookie-1"]

        second = await collector.run_cycle()
        assert second.observation_count == 4
        assert usage.tokens == ["cookie-1", "cookie-2"]

    @pytest.mark.asyncio
    async def test_immediate_policy_retries_in_same_cycle(
        self,
        usage_snapshot: "UsageSnapshot",
    ) -> "None":
        source = MockCredentialSource()
        usage = MockUsageProvider(usage_snapshot, errors=[AuthExpired("401")])
        collector = _collector(
            usage,
            None,
            RecordingSink(),
            source=source,
            auth_retry="immediate",
        )

        report = await collector.run_cycle()

        assert report.observation_count == 4
        assert usage.tokens == ["cookie-1", "cookie-2"]

    @pytest.mark.asyncio
    async def test_immediate_policy_retries_only_once(
        self,
        usage_snapshot: "UsageSnapshot",
    ) -> "None":
        usage = MockUsageProvider(
            usage_snapshot,
            errors=[AuthExpired("401"), AuthExpired("401")],
        )
        collector = _collector(usage, None, RecordingSink(), auth_retry="immediate")

        report = await collector.run_cycle()

        assert report.observation_count == 0
        assert len(usage.tokens) == 2

    def test_rejects_unknown_policy(self, usage_snapshot: "UsageSnapshot") -> "None":
        with pytest.raises(ValueError):
            _collector(
                MockUsageProvider(usage_snapshot),
                None,
                RecordingSink(),
                auth_retry="sometimes",
            )


class TestRun:
    @pytest.mark.asyncio
    async def test_runs_until_stopped(self, usage_snapshot: "UsageSnapshot") -> "None":
        sink = RecordingSink()
        collector = _collector(
            MockUsageProvider(usage_snapshot),
            None,
            sink,
            collect_interval_seconds=0.01,
        )

        async def _stop_after_two_batches() -> "None":
            while len(sink.batches) < 2:
                await asyncio.sleep(0.005)
            collector.stop()

        await asyncio.wait_for(
            asyncio.gather(collector.run(), _stop_after_two_batches()),
            timeout=2,
        )
        assert len(sink.batches) >= 2

    @pytest.mark.asyncio
    async def test_abandons_cycle_after_grace_period(
        self,
        usage_snapshot: "UsageSnapshot",
    ) -> "None":
        sink = RecordingSink()
        collector = _collector(
            MockUsageProvider(usage_snapshot, delay=5),
            None,
            sink,
            shutdown_grace_seconds=0.05,
        )

        async def _stop_soon() -> "None":
            await asyncio.sleep(0.05)
            collector.stop()

        start = time.monotonic()
        await asyncio.gather(collector.run(), _stop_soon())

        assert time.monotonic() - start < 1
        assert sink.batches == []

    @pytest.mark.asyncio
    async def test_in_flight_cycle_finishes_within_grace(
        self,
        usage_snapshot: "UsageSnapshot",
    ) -> "None":
        sink = RecordingSink()
        collector = _collector(
            MockUsageProvider(usage_snapshot, delay=0.1),
            None,
            sink,
            shutdown_grace_seconds=2,
        )

        async def _stop_soon() -> "None":
            await asyncio.sleep(0.02)
            collector.stop()

        await asyncio.gather(collector.run(), _stop_soon())

        assert len(sink.batches) == 1


class TimedSink:
    """
    Records when each batch arrives, relative to construction.
    """

    def __init__(self) -> "None":
        self._start = time.monotonic()
        self.published: "list[tuple[float, set[str]]]" = []

    def publish(self, observations: "list[Observation]") -> "bool":
        self.published.append((time.monotonic() - self._start, _names(observations)))
        return True


class TestPublishOrder:
    @pytest.mark.asyncio
    async def test_fast_source_is_published_before_slow_one_settles(
        self,
        usage_snapshot: "UsageSnapshot",
        credits_snapshot: "CreditsSnapshot",
    ) -> "None":
        sink = TimedSink()
        collector = _collector(
            MockUsageProvider(usage_snapshot, delay=0.01),
            MockCreditsProvider(credits_snapshot, delay=1.0),
            sink,
            fetch_timeout_seconds=5,
        )

        report = await collector.run_cycle()

        assert report.observation_count == 7
        assert len(sink.published) == 2

        usage_at, usage_names = sink.published[0]
        assert usage_at < 0.2
        assert usage_names == {
            "claude.usage.utilization",
            "claude.usage.seconds_to_reset",
        }

        credits_at, credits_names = sink.published[1]
        assert credits_at >= 0.9
        assert all(name.startswith("openrouter.") for name in credits_names)

    @pytest.mark.asyncio
    async def test_cycles_publish_in_order(
        self,
        usage_snapshot: "UsageSnapshot",
        credits_snapshot: "CreditsSnapshot",
    ) -> "None":
        sink = RecordingSink()
        collector = _collector(
            MockUsageProvider(usage_snapshot, delay=0.05),
            MockCreditsProvider(credits_snapshot),
            sink,
        )

        await collector.run_cycle()
        await collector.run_cycle()

        # credits settle first in each cycle and no cycle overlaps the next
        prefixes = [batch[0].name.split(".")[0] for batch in sink.batches]
        assert prefixes == [
            "openrouter",
            "claude",
            "openrouter",
            "claude",
        ]


class TestTracing:
    @pytest.mark.asyncio
    async def test_cycle_and_fetch_spans(
        self,
        usage_snapshot: "UsageSnapshot",
    ) -> "None":
        spans = InMemorySpanExporter()
        tracer_provider = TracerProvider()
        tracer_provider.add_span_processor(SimpleSpanProcessor(spans))

        collector = _collector(
            MockUsageProvider(usage_snapshot),
            MockCreditsProvider(error=UpstreamUnavailable("502")),
            RecordingSink(),
            tracer=tracer_provider.get_tracer("test"),
        )

        await collector.run_cycle()

        finished = {span.name: span for span in spans.get_finished_spans()}
        assert set(finished) == {"collection_cycle", "fetch_usage", "fetch_credits"}

        cycle = finished["collection_cycle"]
        assert cycle.attributes["cycle.observation_count"] == 4
        assert cycle.attributes["cycle.published"] is True
        assert cycle.attributes["cycle.source.usage"] == "ok"
        assert (
            cycle.attributes["cycle.source.credits"] == "failed:UpstreamUnavailable"
        )

        usage = finished["fetch_usage"]
        assert usage.parent.span_id == cycle.context.span_id
        assert usage.attributes["fetch.provider"] == "mock-usage"
        assert usage.attributes["fetch.status"] == "ok"

        credits = finished["fetch_credits"]
        assert credits.parent.span_id == cycle.context.span_id
        assert credits.attributes["fetch.status"] == "UpstreamUnavailable"
        assert credits.status.status_code is StatusCode.ERROR


class TestFetchLogging:
    @pytest.mark.parametrize(
        "body",
        [
            b"<html>secret-session-page</html>",
            b'{"five_hour": "secret-session-page"}',
        ],
    )
    @pytest.mark.asyncio
    @respx.mock
    async def test_malformed_response_logs_size_not_body(
        self,
        body: "bytes",
    ) -> "None":
        respx.get(f"{CLAUDE_BASE_URL}/api/organizations/org-1/usage").mock(
            return_value=httpx.Response(200, content=body),
        )
        collector = Collector(
            ClaudeUsageProvider(),
            CredentialCache(MockCredentialSource()),
            "org-1",
            RecordingSink(),
        )

        with capture_logs() as logs:
            report = await collector.run_cycle()
        await collector.close()

        statuses = {o.source: o.status for o in report.outcomes}
        assert statuses["usage"] == "failed:MalformedResponse"

        malformed = [e for e in logs if e["event"] == "fetch_malformed_response"]
        assert len(malformed) == 1
        assert malformed[0]["source"] == "usage"
        assert malformed[0]["provider"] == "claude"
        assert malformed[0]["payload_size"] == len(body)
        assert all("secret-session-page" not in repr(entry) for entry in logs)


class TestEndToEnd:
    @pytest.mark.asyncio
    @respx.mock
    async def test_publishes_expected_gauges(
        self,
        meter_provider: "MeterProvider",
        read_gauges: "Callable[[], dict]",
    ) -> "None":
        respx.post("http://broker.local/v1/cookie").mock(
            return_value=httpx.Response(200, json={"status": "ok", "cookie": "abc"}),
        )
        respx.get(f"{CLAUDE_BASE_URL}/api/organizations/org-1/usage").mock(
            return_value=httpx.Response(
                200,
                json={"five_hour": {"utilization": 0.42, "seconds_to_reset": 1200}},
            )
        )
        respx.get(f"{OPENROUTER_BASE_URL}/api/v1/credits").mock(
            return_value=httpx.Response(
                200,
                json={"total": 100, "used": 37.5, "remaining": 62.5},
            )
        )

        broker = BrokerCredentialSource("http://broker.local")
        exporter = GaugeExporter(meter_provider)
        collector = Collector(
            ClaudeUsageProvider(),
            CredentialCache(broker),
            "org-1",
            exporter,
            credits_provider=OpenRouterCreditsProvider(api_key="sk-or-test"),
        )

        report = await collector.run_cycle()
        await collector.close()
        await broker.close()

        assert report.observation_count == 5
        assert exporter.published_batches == 2

        five_hour = (("metric_name", "five_hour"),)
        usd = (("unit", "usd"),)
        assert read_gauges() == {
            ("claude.usage.utilization", five_hour): 0.42,
            ("claude.usage.seconds_to_reset", five_hour): 1200,
            ("openrouter.credits.total", usd): 100,
            ("openrouter.credits.usage", usd): 37.5,
            ("openrouter.credits.remaining", usd): 62.5,
        }
