"""Provider adapter layer: fal.ai (webhook queue) and AI Horde (polling-only) behind a common protocol."""

from __future__ import annotations

import httpx

from igen.config import Settings
from igen.errors import ValidationError
from igen.providers.base import (
    ArtifactSource,
    Completed,
    Failed,
    Pending,
    ProviderAdapter,
    ProviderCapabilities,
    ProviderOutcome,
    Submission,
    WebhookEvent,
)
from igen.providers.fal_provider import FalProvider
from igen.providers.horde_provider import HordeProvider

PROVIDER_NAMES = ("fal", "horde")


def get_provider(provider_name: str, settings: Settings, client: httpx.Client | None = None) -> ProviderAdapter:
    """Build an adapter with explicit configuration. provider_name: 'fal' | 'horde'."""
    name = provider_name.lower()
    timeout = settings.igen_http_timeout_seconds
    if name == "horde":
        return HordeProvider(
            api_key=settings.horde_api_key,
            api_url=settings.horde_api_url,
            timeout=timeout,
            client=client,
        )
    if name == "fal":
        return FalProvider(
            api_key=settings.fal_key,
            queue_url=settings.fal_queue_url,
            timeout=timeout,
            client=client,
        )
    raise ValidationError(f"Unknown provider: {provider_name}")


class ProviderRegistry:
    """Named adapters plus endpoint-prefix routing."""

    def __init__(
        self,
        adapters: dict[str, ProviderAdapter],
        routes: list[tuple[str, str]] | None = None,
        default: str | None = None,
    ):
        self._adapters = dict(adapters)
        self._routes = sorted(routes or [], key=lambda r: len(r[0]), reverse=True)
        self._default = default

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProviderRegistry":
        adapters = {name: get_provider(name, settings) for name in PROVIDER_NAMES}
        return cls(adapters, routes=settings.provider_routes, default=settings.igen_default_provider)

    @property
    def names(self) -> list[str]:
        return list(self._adapters)

    def get(self, name: str) -> ProviderAdapter:
        adapter = self._adapters.get(name)
        if adapter is None:
            raise ValidationError(f"Unknown provider: {name}")
        return adapter

    def resolve(self, endpoint: str) -> ProviderAdapter:
        """Pick the adapter for an endpoint: longest matching prefix, else the default."""
        for prefix, name in self._routes:
            if endpoint.startswith(prefix):
                return self.get(name)
        if self._default is None:
            raise ValidationError(f"No provider configured for endpoint: {endpoint}")
        return self.get(self._default)


__all__ = [
    "ArtifactSource",
    "Completed",
    "Failed",
    "Pending",
    "ProviderAdapter",
    "ProviderCapabilities",
    "ProviderOutcome",
    "Submission",
    "WebhookEvent",
    "FalProvider",
    "HordeProvider",
    "ProviderRegistry",
    "get_provider",
]
