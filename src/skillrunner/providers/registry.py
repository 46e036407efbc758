"""Provider registry."""

from __future__ import annotations

from typing import TYPE_CHECKING

from skillrunner.observability.logging import get_logger

if TYPE_CHECKING:
    from skillrunner.providers.base import Provider, ProviderInfo

log = get_logger(__name__)


class ProviderRegistry:
    """Ordered collection of provider instances keyed by name.

    Registration order is preserved; the router uses it to break
    priority ties.
    """

    def __init__(self) -> None:
        self._providers: dict[str, Provider] = {}

    def register(self, provider: Provider) -> None:
        """Add a provider under its ``info.name``.

        Raises:
            ValueError: If a provider with the same name is already registered.
        """
        name = provider.info.name
        if name in self._providers:
            raise ValueError(f"provider already registered: {name}")
        self._providers[name] = provider
        log.debug("provider_registered", provider=name, local=provider.info.is_local)

    def get(self, name: str) -> Provider | None:
        """Return the provider registered under ``name``, or None."""
        return self._providers.get(name)

    def names(self) -> list[str]:
        """Registered provider names in registration order."""
        return list(self._providers)

    def list_providers(self) -> list[ProviderInfo]:
        """Static info of every registered provider."""
        return [p.info for p in self._providers.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._providers

    def __len__(self) -> int:
        return len(self._providers)

    async def close_all(self) -> None:
        """Close every provider's network resources."""
        for name, provider in self._providers.items():
            try:
                await provider.close()
            except Exception as e:
                log.warning("provider_close_failed", provider=name, error=str(e))
