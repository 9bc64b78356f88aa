from typing import Protocol

from claude_usage_metrics.models import Credential, CreditsSnapshot, UsageSnapshot


class CredentialSource(Protocol):
    """
    CredentialSource hands out the session cookie for an organization.
    """

    async def fetch_credential(self, organization_id: "str") -> "Credential": ...


class UsageProvider(Protocol):
    """
    UsageProvider stands as the protocol the quota usage client must
    satisfy. It turns one session credential into one UsageSnapshot.
    """

    @property
    def name(self) -> "str": ...

    async def fetch_usage(self, credential: "Credential") -> "UsageSnapshot": ...

    async def close(self) -> "None": ...


class CreditsProvider(Protocol):
    """
    CreditsProvider stands as the protocol the account credits client
    must satisfy. Its API key is bound at construction time.
    """

    @property
    def name(self) -> "str": ...

    async def fetch_credits(self) -> "CreditsSnapshot": ...

    async def close(self) -> "None": ...
