import asyncio
import time
from typing import Awaitable, Protocol, Sequence, TypeVar

import structlog
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode, Tracer

from claude_usage_metrics.credentials import CredentialCache
from claude_usage_metrics.errors import (
    AuthExpired,
    CollectorError,
    CredentialUnavailable,
    MalformedResponse,
    UpstreamUnavailable,
)
from claude_usage_metrics.metrics import map_observations
from claude_usage_metrics.models import (
    CreditsSnapshot,
    CycleReport,
    FetchOutcome,
    Observation,
    UsageSnapshot,
)
from claude_usage_metrics.provider.base import CreditsProvider, UsageProvider

logger = structlog.get_logger()

T = TypeVar("T")

USAGE_SOURCE = "usage"
CREDITS_SOURCE = "credits"

AUTH_RETRY_NEXT_CYCLE = "next_cycle"
AUTH_RETRY_IMMEDIATE = "immediate"
AUTH_RETRY_POLICIES = (AUTH_RETRY_NEXT_CYCLE, AUTH_RETRY_IMMEDIATE)


class ObservationSink(Protocol):
    def publish(self, observations: "Sequence[Observation]") -> "bool": ...


class Collector:
    """
    Collector drives the collection cycle on a fixed interval: fetch usage
    and credits concurrently, map each result into gauges as it arrives and
    hand it to the exporter. A failing source only removes its own
    gauges from that cycle; nothing short of stop() ends the loop.

    The credential cache is the only state shared between cycles. It is
    owned by the caller and passed in, so tests can inject fakes.
    """

    def __init__(
        self,
        usage_provider: "UsageProvider",
        credential_cache: "CredentialCache",
        organization_id: "str",
        exporter: "ObservationSink",
        credits_provider: "CreditsProvider | None" = None,
        collect_interval_seconds: "float" = 60,
        fetch_timeout_seconds: "float" = 10.0,
        auth_retry: "str" = AUTH_RETRY_NEXT_CYCLE,
        shutdown_grace_seconds: "float" = 5.0,
        tracer: "Tracer | None" = None,
    ) -> "None":
        if auth_retry not in AUTH_RETRY_POLICIES:
            raise ValueError(f"unknown auth retry policy: {auth_retry}")

        self._usage = usage_provider
        self._credits = credits_provider
        self._credentials = credential_cache
        self._organization_id = organization_id
        self._exporter = exporter
        self._interval = collect_interval_seconds
        self._fetch_timeout = fetch_timeout_seconds
        self._auth_retry = auth_retry
        self._grace = shutdown_grace_seconds
        self._stop_event: "asyncio.Event" = asyncio.Event()
        # no-op unless a tracer provider is passed in or installed globally
        self._tracer = tracer or trace.get_tracer(__name__)

    def stop(self) -> "None":
        """
        signals the collector loop to stop. An in-flight cycle gets the
        shutdown grace period to finish.
        """
        self._stop_event.set()

    async def close(self) -> "None":
        """
        closes all provider sessions.
        """
        await self._usage.close()
        if self._credits is not None:
            await self._credits.close()

    async def run(self) -> "None":
        """
        runs the main collection loop. Runs until stop() is called.
        """
        while not self._stop_event.is_set():
            cycle_start = time.monotonic()
            cycle = asyncio.create_task(self.run_cycle())
            stop_wait = asyncio.create_task(self._stop_event.wait())

            done, _ = await asyncio.wait(
                {cycle, stop_wait},
                return_when=asyncio.FIRST_COMPLETED,
            )

            if cycle not in done:
                logger.info("shutdown_waiting_for_cycle", grace=self._grace)
                try:
                    # wait_for cancels the cycle when the grace period runs out
                    await asyncio.wait_for(cycle, timeout=self._grace)
                except TimeoutError:
                    logger.warning("collection_cycle_abandoned")
                except Exception:
                    logger.exception("collection_cycle_crashed")
                break

            stop_wait.cancel()
            if cycle.exception() is not None:
                logger.error(
                    "collection_cycle_crashed",
                    error=repr(cycle.exception()),
                )

            # keep ticks on a fixed cadence regardless of cycle length
            delay = max(0.0, self._interval - (time.monotonic() - cycle_start))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except TimeoutError:
                pass

    async def run_cycle(self) -> "CycleReport":
        """
        runs a single fetch, map, publish cycle and returns its summary.

        Each source is mapped and published as soon as its fetch settles,
        so a slow source never holds back the other one. Every fetch of
        the cycle has settled or been cancelled before this returns.
        """
        cycle_start = time.monotonic()
        with self._tracer.start_as_current_span("collection_cycle") as span:
            logger.info("collection_cycle_start")

            fetches = [
                asyncio.create_task(
                    self._outcome(USAGE_SOURCE, self._usage.name, self._collect_usage())
                )
            ]
            if self._credits is not None:
                fetches.append(
                    asyncio.create_task(
                        self._outcome(
                            CREDITS_SOURCE,
                            self._credits.name,
                            self._collect_credits(),
                        )
                    )
                )

            outcomes: "list[FetchOutcome]" = []
            observation_count = 0
            published = False
            try:
                for settled in asyncio.as_completed(fetches):
                    outcome = await settled
                    outcomes.append(outcome)

                    observations = _map_outcome(outcome)
                    if observations:
                        observation_count += len(observations)
                        published = self._exporter.publish(observations) or published
            finally:
                pending = [task for task in fetches if not task.done()]
                for task in pending:
                    task.cancel()
                if pending:
                    await asyncio.gather(*pending, return_exceptions=True)

            if self._credits is None:
                outcomes.append(FetchOutcome(source=CREDITS_SOURCE))

            if observation_count == 0:
                logger.warning("collection_cycle_empty")

            report = CycleReport(
                outcomes=tuple(outcomes),
                observation_count=observation_count,
                published=published,
                duration_seconds=time.monotonic() - cycle_start,
            )

            span.set_attribute("cycle.observation_count", observation_count)
            span.set_attribute("cycle.published", published)
            for outcome in report.outcomes:
                span.set_attribute(f"cycle.source.{outcome.source}", outcome.status)

        logger.info(
            "collection_cycle_end",
            sources={o.source: o.status for o in report.outcomes},
            observation_count=report.observation_count,
            published=report.published,
            duration_seconds=round(report.duration_seconds, 3),
        )
        return report

    async def _bounded(
        self,
        call: "Awaitable[T]",
        on_timeout: "type[CollectorError]",
    ) -> "T":
        try:
            return await asyncio.wait_for(call, timeout=self._fetch_timeout)
        except TimeoutError as e:
            raise on_timeout(f"timed out after {self._fetch_timeout}s") from e

    async def _collect_usage(self) -> "UsageSnapshot":
        credential = await self._bounded(
            self._credentials.get(self._organization_id),
            CredentialUnavailable,
        )
        try:
            return await self._bounded(
                self._usage.fetch_usage(credential),
                UpstreamUnavailable,
            )
        except AuthExpired:
            self._credentials.invalidate()
            if self._auth_retry != AUTH_RETRY_IMMEDIATE:
                raise

        logger.info("usage_auth_retry", organization_id=self._organization_id)
        credential = await self._bounded(
            self._credentials.get(self._organization_id),
            CredentialUnavailable,
        )
        try:
            return await self._bounded(
                self._usage.fetch_usage(credential),
                UpstreamUnavailable,
            )
        except AuthExpired:
            # a freshly brokered cookie was rejected too
            self._credentials.invalidate()
            raise

    async def _collect_credits(self) -> "CreditsSnapshot":
        return await self._bounded(self._credits.fetch_credits(), UpstreamUnavailable)

    async def _outcome(
        self,
        source: "str",
        provider: "str",
        fetch: "Awaitable[UsageSnapshot | CreditsSnapshot]",
    ) -> "FetchOutcome":
        """
        awaits one fetch branch and folds any failure into the outcome, so
        one branch never takes the other down with it.
        """
        start = time.monotonic()
        with self._tracer.start_as_current_span(f"fetch_{source}") as span:
            span.set_attribute("fetch.provider", provider)
            try:
                snapshot = await fetch
            except MalformedResponse as e:
                logger.warning(
                    "fetch_malformed_response",
                    source=source,
                    provider=provider,
                    error=str(e),
                    payload_size=e.payload_size,
                )
                error: "BaseException" = e
            except CollectorError as e:
                logger.warning(
                    "fetch_error",
                    source=source,
                    provider=provider,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                error = e
            except Exception as e:
                logger.exception(
                    "fetch_unexpected_error",
                    source=source,
                    provider=provider,
                )
                error = e
            else:
                span.set_attribute("fetch.status", "ok")
                return FetchOutcome(
                    source,
                    snapshot=snapshot,
                    elapsed_seconds=time.monotonic() - start,
                )

            span.set_attribute("fetch.status", type(error).__name__)
            span.set_status(Status(StatusCode.ERROR, str(error)))

        return FetchOutcome(
            source,
            error=error,
            elapsed_seconds=time.monotonic() - start,
        )


def _map_outcome(outcome: "FetchOutcome") -> "list[Observation]":
    if isinstance(outcome.snapshot, UsageSnapshot):
        return map_observations(outcome.snapshot, None)
    if isinstance(outcome.snapshot, CreditsSnapshot):
        return map_observations(None, outcome.snapshot)
    return []
