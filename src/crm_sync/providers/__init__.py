"""Provider adapters and the registry that selects one by Connection.provider."""

from __future__ import annotations

from typing import Any

from src.crm_sync.providers.base import CredentialSaver, ProviderAdapter
from src.crm_sync.providers.hubspot import HubSpotAdapter
from src.crm_sync.providers.pipedrive import PipedriveAdapter
from src.crm_sync.providers.salesforce import SalesforceAdapter
from src.crm_sync.rate_limiter import RateLimiter
from src.crm_sync.schemas import ProviderType

ADAPTER_REGISTRY: dict[ProviderType, type[ProviderAdapter]] = {
    ProviderType.HUBSPOT: HubSpotAdapter,
    ProviderType.SALESFORCE: SalesforceAdapter,
    ProviderType.PIPEDRIVE: PipedriveAdapter,
}


def build_adapters(limiter: RateLimiter, **kwargs: Any) -> dict[ProviderType, ProviderAdapter]:
    """Instantiate one adapter per provider sharing the limiter and options."""
    return {provider: cls(limiter, **kwargs) for provider, cls in ADAPTER_REGISTRY.items()}


__all__ = [
    "ADAPTER_REGISTRY",
    "CredentialSaver",
    "HubSpotAdapter",
    "PipedriveAdapter",
    "ProviderAdapter",
    "SalesforceAdapter",
    "build_adapters",
]
