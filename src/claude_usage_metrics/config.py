import os
from dataclasses import dataclass

from claude_usage_metrics.provider.claude import CLAUDE_BASE_URL
from claude_usage_metrics.provider.openrouter import OPENROUTER_BASE_URL


@dataclass
class Config:
    # mandatory, see validate()
    broker_url: "str" = ""
    organization_id: "str" = ""
    otlp_endpoint: "str" = ""

    service_name: "str" = "claude-usage-metrics"
    # empty disables the credits branch
    openrouter_api_key: "str" = ""
    claude_base_url: "str" = CLAUDE_BASE_URL
    openrouter_base_url: "str" = OPENROUTER_BASE_URL

    # collection interval in seconds
    collect_interval: "int" = 60
    # how often the metric reader pushes the current gauges, in seconds
    export_interval: "float" = 15.0
    # per-call timeout in seconds
    fetch_timeout: "float" = 10.0
    # how long a brokered cookie is reused, 0 means every cycle
    credential_ttl: "int" = 300
    # "next_cycle" or "immediate"
    auth_retry: "str" = "next_cycle"
    shutdown_grace: "float" = 5.0
    log_level: "str" = "info"
    log_format: "str" = "console"

    @classmethod
    def from_env(cls) -> "Config":
        return cls(
            broker_url=os.environ.get("CREDENTIAL_BROKER_URL", ""),
            organization_id=os.environ.get("CLAUDE_ORGANIZATION_ID", ""),
            otlp_endpoint=os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT", ""),
            service_name=os.environ.get("SERVICE_NAME") or "claude-usage-metrics",
            openrouter_api_key=os.environ.get("OPENROUTER_API_KEY", ""),
            claude_base_url=os.environ.get("CLAUDE_BASE_URL") or CLAUDE_BASE_URL,
            openrouter_base_url=(
                os.environ.get("OPENROUTER_BASE_URL") or OPENROUTER_BASE_URL
            ),
        )

    @property
    def credits_enabled(self) -> "bool":
        return bool(self.openrouter_api_key)

    def validate(self) -> "list[str]":
        """
        returns the environment variables of every missing mandatory
        setting. Empty means the config is usable.
        """
        missing: "list[str]" = []
        if not self.broker_url:
            missing.append("CREDENTIAL_BROKER_URL")
        if not self.organization_id:
            missing.append("CLAUDE_ORGANIZATION_ID")
        if not self.otlp_endpoint:
            missing.append("OTEL_EXPORTER_OTLP_ENDPOINT")
        return missing
