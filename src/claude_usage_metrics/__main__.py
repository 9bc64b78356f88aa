import asyncio
import signal

import structlog

from claude_usage_metrics.cli import parse_args
from claude_usage_metrics.collector import Collector
from claude_usage_metrics.config import Config
from claude_usage_metrics.credentials import BrokerCredentialSource, CredentialCache
from claude_usage_metrics.exporter import GaugeExporter
from claude_usage_metrics.logging import setup_logging
from claude_usage_metrics.provider.claude import ClaudeUsageProvider
from claude_usage_metrics.provider.openrouter import OpenRouterCreditsProvider
from claude_usage_metrics.telemetry import setup_telemetry

logger = structlog.get_logger()


async def _run(config: "Config") -> "None":
    broker = BrokerCredentialSource(config.broker_url, timeout=config.fetch_timeout)
    credential_cache = CredentialCache(broker, ttl_seconds=config.credential_ttl)
    usage_provider = ClaudeUsageProvider(
        base_url=config.claude_base_url,
        timeout=config.fetch_timeout,
    )

    credits_provider = None
    if config.credits_enabled:
        credits_provider = OpenRouterCreditsProvider(
            api_key=config.openrouter_api_key,
            base_url=config.openrouter_base_url,
            timeout=config.fetch_timeout,
        )
        logger.info("credits_enabled", provider="openrouter")
    else:
        logger.info("credits_disabled", reason="OPENROUTER_API_KEY not set")

    telemetry = setup_telemetry(
        config.service_name,
        config.otlp_endpoint,
        export_interval_seconds=config.export_interval,
    )
    exporter = GaugeExporter(telemetry.meter_provider)
    logger.info(
        "telemetry_started",
        endpoint=config.otlp_endpoint,
        service_name=config.service_name,
    )

    collector = Collector(
        usage_provider,
        credential_cache,
        config.organization_id,
        exporter,
        credits_provider=credits_provider,
        collect_interval_seconds=config.collect_interval,
        fetch_timeout_seconds=config.fetch_timeout,
        auth_retry=config.auth_retry,
        shutdown_grace_seconds=config.shutdown_grace,
        tracer=telemetry.tracer,
    )

    loop = asyncio.get_running_loop()
    # for SIGINT and SIGTERM, signal the collector
    # to stop gracefully
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, collector.stop)

    try:
        await collector.run()
    finally:
        logger.info("shutting_down")
        # flushes the last gauges and spans; blocking, so off the loop
        await asyncio.to_thread(telemetry.shutdown, config.shutdown_grace)
        await collector.close()
        await broker.close()
        logger.info("shutdown_complete")


def main() -> "None":
    config = parse_args()
    setup_logging(config.log_level, config.log_format)

    missing = config.validate()
    if missing:
        raise SystemExit(
            "Missing mandatory configuration. Set " + ", ".join(missing) + "."
        )

    logger.info(
        "starting",
        organization_id=config.organization_id,
        interval=config.collect_interval,
        auth_retry=config.auth_retry,
    )
    asyncio.run(_run(config))


if __name__ == "__main__":
    main()
