import argparse

from claude_usage_metrics.collector import AUTH_RETRY_POLICIES
from claude_usage_metrics.config import Config


def parse_args(argv: "list[str] | None" = None) -> "Config":
    parser = argparse.ArgumentParser(
        prog="claude-usage-metrics",
        description="Exports Claude usage and OpenRouter credits as OTLP gauges",
    )
    parser.add_argument(
        "--collect.interval",
        dest="collect_interval",
        type=int,
        default=60,
        help="Collection interval in seconds (default: 60)",
    )
    parser.add_argument(
        "--export.interval",
        dest="export_interval",
        type=float,
        default=15.0,
        help="Seconds between OTLP metric exports (default: 15)",
    )
    parser.add_argument(
        "--fetch.timeout",
        dest="fetch_timeout",
        type=float,
        default=10.0,
        help="Timeout of every upstream call in seconds (default: 10)",
    )
    parser.add_argument(
        "--credential.ttl",
        dest="credential_ttl",
        type=int,
        default=300,
        help="Seconds a brokered cookie is reused, 0 to fetch every cycle "
        "(default: 300)",
    )
    parser.add_argument(
        "--auth.retry",
        dest="auth_retry",
        default="next_cycle",
        choices=list(AUTH_RETRY_POLICIES),
        help="When to retry after the usage endpoint rejects the cookie "
        "(default: next_cycle)",
    )
    parser.add_argument(
        "--shutdown.grace",
        dest="shutdown_grace",
        type=float,
        default=5.0,
        help="Seconds an in-flight cycle may take after a shutdown signal "
        "(default: 5)",
    )
    parser.add_argument(
        "--log.level",
        dest="log_level",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)",
    )
    parser.add_argument(
        "--log.format",
        dest="log_format",
        default="console",
        choices=["console", "json"],
        help="Log output format (default: console)",
    )

    args = parser.parse_args(argv)
    config = Config.from_env()
    config.collect_interval = args.collect_interval
    config.export_interval = args.export_interval
    config.fetch_timeout = args.fetch_timeout
    config.credential_ttl = args.credential_ttl
    config.auth_retry = args.auth_retry
    config.shutdown_grace = args.shutdown_grace
    config.log_level = args.log_level
    config.log_format = args.log_format
    return config
