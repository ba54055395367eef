"""Provider adapters for PulseSync.

Each adapter implements the WearableAdapter ABC and handles fetching
activities, sleep, and daily summaries from one provider API and
normalizing the JSON into the canonical PulseSync models.

Available adapters:
    GarminAdapter — Garmin Health API
    FitbitAdapter — Fitbit Web API
"""

from __future__ import annotations

from pulsesync.config import Settings
from pulsesync.exceptions import UnsupportedProviderError
from pulsesync.wearables.adapters.fitbit import FitbitAdapter
from pulsesync.wearables.adapters.garmin import GarminAdapter
from pulsesync.wearables.base import TokenLookup, WearableAdapter

__all__ = [
    "AdapterRegistry",
    "FitbitAdapter",
    "GarminAdapter",
    "build_adapter_registry",
]


class AdapterRegistry:
    """Provider slug → adapter instance."""

    def __init__(self, adapters: dict[str, WearableAdapter] | None = None) -> None:
        self._adapters: dict[str, WearableAdapter] = dict(adapters or {})

    def register(self, provider: str, adapter: WearableAdapter) -> None:
        self._adapters[provider] = adapter

    def get(self, provider: str) -> WearableAdapter:
        """Return the adapter for a provider slug.

        Raises:
            UnsupportedProviderError: If no adapter is registered for it.
        """
        try:
            return self._adapters[provider]
        except KeyError:
            raise UnsupportedProviderError(provider) from None

    async def aclose(self) -> None:
        for adapter in self._adapters.values():
            await adapter.aclose()


def build_adapter_registry(settings: Settings, token_lookup: TokenLookup) -> AdapterRegistry:
    """Create adapters for every provider that has client credentials configured."""
    registry = AdapterRegistry()
    timeout = settings.provider_request_timeout_seconds
    if settings.garmin_client_id:
        registry.register("garmin", GarminAdapter(token_lookup, timeout=timeout))
    if settings.fitbit_client_id:
        registry.register("fitbit", FitbitAdapter(token_lookup, timeout=timeout))
    return registry
