import math
from datetime import datetime, timezone

import httpx
import structlog

from claude_usage_metrics.errors import (
    AuthExpired,
    MalformedResponse,
    UpstreamUnavailable,
)
from claude_usage_metrics.models import Credential, UsageSnapshot, UsageWindow

logger = structlog.get_logger()

CLAUDE_BASE_URL = "https://claude.ai"

# windows the usage endpoint is known to report; anything else that looks
# like a window is kept too
KNOWN_WINDOWS: "tuple[str, ...]" = (
    "five_hour",
    "seven_day",
    "seven_day_opus",
    "seven_day_sonnet",
    "seven_day_oauth_apps",
    "extra_usage",
    "oauth_apps",
    "iguana_necktie",
)


class ClaudeUsageProvider:
    """
    ClaudeUsageProvider fetches the quota windows of an organization
    from the Claude usage endpoint, authenticating with the session
    cookie handed out by the credential broker.
    """

    def __init__(
        self,
        base_url: "str" = CLAUDE_BASE_URL,
        timeout: "float" = 10.0,
    ) -> "None":
        self._base_url = base_url.rstrip("/")
        self._client: "httpx.AsyncClient" = httpx.AsyncClient(
            timeout=timeout,
            headers={"Accept": "application/json"},
        )

    @property
    def name(self) -> "str":
        return "claude"

    async def close(self) -> "None":
        """
        closes the underlying HTTP client.
        """
        await self._client.aclose()

    def usage_url(self, organization_id: "str") -> "str":
        return f"{self._base_url}/api/organizations/{organization_id}/usage"

    async def fetch_usage(self, credential: "Credential") -> "UsageSnapshot":
        url = self.usage_url(credential.organization_id)
        logger.debug("claude_fetch_usage", url=url)

        try:
            resp = await self._client.get(
                url,
                headers={"Cookie": credential.cookie_header},
            )
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"usage endpoint unreachable: {e}") from e

        if resp.status_code in (401, 403):
            raise AuthExpired(f"usage endpoint answered HTTP {resp.status_code}")
        if resp.status_code != 200:
            raise UpstreamUnavailable(
                f"usage endpoint answered HTTP {resp.status_code}"
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise MalformedResponse(
                "usage response is not JSON",
                payload_size=len(resp.content),
            ) from e

        snapshot = parse_usage(data, payload_size=len(resp.content))
        logger.debug("claude_usage_done", window_count=len(snapshot.windows))
        return snapshot


def parse_usage(
    data: "object",
    payload_size: "int" = 0,
    now: "datetime | None" = None,
) -> "UsageSnapshot":
    """
    turns a decoded usage response into a UsageSnapshot.

    Every top-level object carrying a "utilization" is a window, known or
    not. Null windows and windows with a null utilization are skipped.
    Utilization outside [0, 1] is clamped and flagged rather than rejected.
    """
    if not isinstance(data, dict):
        raise MalformedResponse(
            "usage response is not an object",
            payload_size=payload_size,
        )

    now = now or datetime.now(timezone.utc)
    windows: "list[UsageWindow]" = []

    for name, raw in data.items():
        if raw is None:
            continue

        if not isinstance(raw, dict):
            if name in KNOWN_WINDOWS:
                raise MalformedResponse(
                    f"usage window {name} is not an object",
                    payload_size=payload_size,
                )
            # scalar metadata next to the windows
            continue

        if raw.get("utilization") is None:
            if name in KNOWN_WINDOWS:
                logger.debug("usage_window_without_utilization", window=name)
            continue

        windows.append(_parse_window(name, raw, payload_size, now))

    return UsageSnapshot(windows=tuple(windows))


def _parse_window(
    name: "str",
    raw: "dict",
    payload_size: "int",
    now: "datetime",
) -> "UsageWindow":
    utilization = _as_number(raw.get("utilization"))
    if utilization is None:
        raise MalformedResponse(
            f"usage window {name} has no numeric utilization",
            payload_size=payload_size,
        )

    clamped = False
    if utilization < 0.0 or utilization > 1.0:
        clamped = True
        logger.warning(
            "usage_utilization_clamped",
            window=name,
            upstream_value=utilization,
        )
        utilization = min(1.0, max(0.0, utilization))

    return UsageWindow(
        name=name,
        utilization=utilization,
        seconds_to_reset=_seconds_to_reset(name, raw, payload_size, now),
        clamped=clamped,
    )


def _seconds_to_reset(
    name: "str",
    raw: "dict",
    payload_size: "int",
    now: "datetime",
) -> "int":
    if raw.get("seconds_to_reset") is not None:
        seconds = _as_number(raw["seconds_to_reset"])
        if seconds is None:
            raise MalformedResponse(
                f"usage window {name} has a non-numeric seconds_to_reset",
                payload_size=payload_size,
            )
        return max(0, int(seconds))

    resets_at = raw.get("resets_at")
    if not resets_at:
        return 0

    try:
        reset_time = datetime.fromisoformat(str(resets_at).replace("Z", "+00:00"))
    except ValueError as e:
        raise MalformedResponse(
            f"usage window {name} has an unparseable resets_at",
            payload_size=payload_size,
        ) from e

    if reset_time.tzinfo is None:
        reset_time = reset_time.replace(tzinfo=timezone.utc)

    return max(0, int((reset_time - now).total_seconds()))


def _as_number(value: "object") -> "float | None":
    # bool is an int subclass but never a valid reading
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if math.isnan(value) or math.isinf(value):
        return None
    return float(value)
