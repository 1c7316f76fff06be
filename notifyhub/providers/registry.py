from __future__ import annotations

from typing import Dict, Iterator, List, Optional

import httpx

from notifyhub.config import Settings
from notifyhub.errors import ValidationError
from notifyhub.models.integration import ProviderType
from notifyhub.providers.base import ProviderAdapter
from notifyhub.providers.google import GmailAdapter, GoogleDriveAdapter
from notifyhub.providers.hubspot import HubSpotAdapter
from notifyhub.providers.slack import SlackAdapter

# provider type -> adapter class
ADAPTER_CLASSES = {
    ProviderType.GMAIL: GmailAdapter,
    ProviderType.GOOGLE_DRIVE: GoogleDriveAdapter,
    ProviderType.SLACK: SlackAdapter,
    ProviderType.HUBSPOT: HubSpotAdapter,
}

# OAuth endpoint group -> integration types it may connect
OAUTH_GROUPS: Dict[str, List[ProviderType]] = {
    "google": [ProviderType.GMAIL, ProviderType.GOOGLE_DRIVE],
    "slack": [ProviderType.SLACK],
    "hubspot": [ProviderType.HUBSPOT],
}


class AdapterRegistry:
    """Routing table from provider type to its adapter instance."""

    def __init__(self, adapters: Dict[ProviderType, ProviderAdapter]) -> None:
        self._adapters = dict(adapters)

    def get(self, provider_type: ProviderType | str) -> ProviderAdapter:
        if not isinstance(provider_type, ProviderType):
            try:
                provider_type = ProviderType.parse(provider_type)
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
        return self._adapters[provider_type]

    def __iter__(self) -> Iterator[ProviderAdapter]:
        return iter(self._adapters.values())

    def for_oauth_group(self, group: str, integration_type: str) -> ProviderAdapter:
        """Adapter for ``integration_type`` if the OAuth endpoint ``group`` may connect it."""
        allowed = OAUTH_GROUPS.get(group)
        if allowed is None:
            raise ValidationError(f"Unknown OAuth provider: {group}")
        adapter = self.get(integration_type)
        if adapter.provider_type not in allowed:
            valid = ", ".join(p.value for p in allowed)
            raise ValidationError(f"Invalid integration type for {group}. Must be one of: {valid}")
        return adapter


def build_adapters(settings: Settings, http_client: Optional[httpx.AsyncClient] = None) -> AdapterRegistry:
    return AdapterRegistry(
        {ptype: cls(settings, http_client=http_client) for ptype, cls in ADAPTER_CLASSES.items()}
    )
