import math

import httpx
import structlog

from claude_usage_metrics.errors import (
    AuthExpired,
    MalformedResponse,
    UpstreamUnavailable,
)
from claude_usage_metrics.models import CreditsSnapshot

logger = structlog.get_logger()

OPENROUTER_BASE_URL = "https://openrouter.ai"

# accepted field names, first match wins
_TOTAL_KEYS = ("total", "total_credits")
_USED_KEYS = ("used", "usage", "total_usage")
_REMAINING_KEYS = ("remaining", "remaining_credits")

# a rounding difference below this is not worth a warning
_CONSISTENCY_TOLERANCE = 0.01


class OpenRouterCreditsProvider:
    """
    OpenRouterCreditsProvider reads the account balance from the
    OpenRouter credits endpoint using a static API key.

    A rejected key does not fix itself mid-run: the first rejection is
    raised as AuthExpired and logged, every later one as
    UpstreamUnavailable so the log is not flooded once per cycle.
    """

    def __init__(
        self,
        api_key: "str",
        base_url: "str" = OPENROUTER_BASE_URL,
        timeout: "float" = 10.0,
    ) -> "None":
        self._url = f"{base_url.rstrip('/')}/api/v1/credits"
        self._client: "httpx.AsyncClient" = httpx.AsyncClient(
            timeout=timeout,
            headers={"Authorization": f"Bearer {api_key}"},
        )
        self._key_rejected = False

    @property
    def name(self) -> "str":
        return "openrouter"

    @property
    def key_rejected(self) -> "bool":
        return self._key_rejected

    async def close(self) -> "None":
        """
        closes the underlying HTTP client.
        """
        await self._client.aclose()

    async def fetch_credits(self) -> "CreditsSnapshot":
        logger.debug("openrouter_fetch_credits", url=self._url)

        try:
            resp = await self._client.get(self._url)
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"credits endpoint unreachable: {e}") from e

        if resp.status_code in (401, 403):
            if self._key_rejected:
                logger.debug("openrouter_key_still_rejected")
                raise UpstreamUnavailable("credits API key rejected")

            self._key_rejected = True
            logger.error("openrouter_key_rejected", status=resp.status_code)
            raise AuthExpired(f"credits endpoint answered HTTP {resp.status_code}")

        if resp.status_code != 200:
            raise UpstreamUnavailable(
                f"credits endpoint answered HTTP {resp.status_code}"
            )

        # the key works again (e.g. it was rotated upstream)
        self._key_rejected = False

        try:
            data = resp.json()
        except ValueError as e:
            raise MalformedResponse(
                "credits response is not JSON",
                payload_size=len(resp.content),
            ) from e

        return parse_credits(data, payload_size=len(resp.content))


def parse_credits(data: "object", payload_size: "int" = 0) -> "CreditsSnapshot":
    """
    turns a decoded credits response into a CreditsSnapshot. The fields
    may sit at top level or inside a "data" envelope.
    """
    if isinstance(data, dict) and isinstance(data.get("data"), dict):
        data = data["data"]

    if not isinstance(data, dict):
        raise MalformedResponse(
            "credits response is not an object",
            payload_size=payload_size,
        )

    total = _pick_amount(data, _TOTAL_KEYS, payload_size)
    used = _pick_amount(data, _USED_KEYS, payload_size)
    if total is None or used is None:
        raise MalformedResponse(
            "credits response lacks total or used",
            payload_size=payload_size,
        )

    remaining = _pick_amount(data, _REMAINING_KEYS, payload_size)
    if remaining is None:
        remaining = max(0.0, total - used)
        logger.debug("openrouter_remaining_derived", remaining=remaining)
    elif abs((total - used) - remaining) > _CONSISTENCY_TOLERANCE:
        logger.warning(
            "openrouter_credits_inconsistent",
            total=total,
            used=used,
            remaining=remaining,
        )

    unit = data.get("unit") or data.get("currency") or "usd"
    return CreditsSnapshot(
        total=total,
        used=used,
        remaining=remaining,
        unit=str(unit).lower(),
    )


def _pick_amount(
    data: "dict",
    keys: "tuple[str, ...]",
    payload_size: "int",
) -> "float | None":
    for key in keys:
        if data.get(key) is None:
            continue

        value = data[key]
        if (
            isinstance(value, bool)
            or not isinstance(value, (int, float))
            or not math.isfinite(value)
            or value < 0
        ):
            raise MalformedResponse(
                f"credits field {key} is not a finite non-negative number",
                payload_size=payload_size,
            )
        return float(value)

    return None
