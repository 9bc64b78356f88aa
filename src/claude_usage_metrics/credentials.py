import asyncio
import time

import httpx
import structlog

from claude_usage_metrics.errors import CredentialUnavailable
from claude_usage_metrics.models import Credential
from claude_usage_metrics.provider.base import CredentialSource

logger = structlog.get_logger()

COOKIE_RPC_PATH = "/v1/cookie"


class BrokerCredentialSource:
    """
    BrokerCredentialSource asks the credential broker for the current
    session cookie of an organization. It is a pure lookup: no retries,
    no caching, every failure surfaces as CredentialUnavailable.
    """

    def __init__(self, broker_url: "str", timeout: "float" = 10.0) -> "None":
        self._url = broker_url.rstrip("/") + COOKIE_RPC_PATH
        self._client: "httpx.AsyncClient" = httpx.AsyncClient(timeout=timeout)

    async def close(self) -> "None":
        await self._client.aclose()

    async def fetch_credential(self, organization_id: "str") -> "Credential":
        try:
            resp = await self._client.post(
                self._url,
                json={"organization_id": organization_id},
            )
        except httpx.HTTPError as e:
            raise CredentialUnavailable(f"credential broker unreachable: {e}") from e

        if resp.status_code == 404:
            raise CredentialUnavailable(
                f"no cookie for organization {organization_id}"
            )
        if resp.status_code != 200:
            raise CredentialUnavailable(
                f"credential broker answered HTTP {resp.status_code}"
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise CredentialUnavailable("credential broker sent invalid JSON") from e

        if not isinstance(data, dict) or data.get("status", "ok") != "ok":
            raise CredentialUnavailable(
                f"no cookie for organization {organization_id}"
            )

        cookie = data.get("cookie")
        if not isinstance(cookie, str) or not cookie:
            raise CredentialUnavailable(
                f"no cookie for organization {organization_id}"
            )

        logger.debug("credential_fetched", organization_id=organization_id)
        return Credential(organization_id=organization_id, token=cookie)


class CredentialCache:
    """
    CredentialCache keeps the last credential handed out by a source
    for at most ttl_seconds. The collector owns one instance and is the
    only writer; the cached Credential is immutable and replaced whole
    on refresh, so concurrent readers need no locking beyond the one
    that collapses simultaneous refreshes into a single broker call.
    """

    def __init__(
        self,
        source: "CredentialSource",
        ttl_seconds: "float" = 300.0,
    ) -> "None":
        self._source = source
        self._ttl = ttl_seconds
        self._current: "Credential | None" = None
        # time.monotonic() at which _current was swapped in
        self._fetched_at: "float" = 0.0
        self._refresh_lock: "asyncio.Lock" = asyncio.Lock()

    def _is_fresh(self, organization_id: "str") -> "bool":
        credential = self._current
        if credential is None or credential.organization_id != organization_id:
            return False
        return time.monotonic() - self._fetched_at < self._ttl

    async def get(self, organization_id: "str") -> "Credential":
        """
        returns the cached credential if still valid, otherwise fetches a
        new one from the source.
        """
        if self._is_fresh(organization_id):
            return self._current

        async with self._refresh_lock:
            # another task may have refreshed it while we waited
            if self._is_fresh(organization_id):
                return self._current

            credential = await self._source.fetch_credential(organization_id)
            self._current = credential
            self._fetched_at = time.monotonic()
            return credential

    def invalidate(self) -> "None":
        """
        drops the cached credential so the next get() hits the source.
        """
        if self._current is not None:
            logger.info(
                "credential_invalidated",
                organization_id=self._current.organization_id,
            )
        self._current = None
