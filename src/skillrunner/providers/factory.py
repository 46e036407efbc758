"""Factory for building the provider registry from configuration."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING

from skillrunner.observability.logging import get_logger
from skillrunner.providers.anthropic_provider import AnthropicProvider
from skillrunner.providers.base import ProviderError
from skillrunner.providers.ollama import OllamaProvider
from skillrunner.providers.openai_provider import OpenAIProvider
from skillrunner.providers.registry import ProviderRegistry

if TYPE_CHECKING:
    from skillrunner.providers.base import Provider
    from skillrunner.routing.config import ProviderRouting, RoutingConfiguration

log = get_logger(__name__)

# Known provider names, in the order they are registered
KNOWN_PROVIDERS = ("ollama", "groq", "openai", "anthropic")

# Environment variables holding API keys for cloud providers
_API_KEY_ENV: dict[str, str] = {
    "groq": "GROQ_API_KEY",
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
}

# HTTP timeout used when the routing configuration sets none
_DEFAULT_HTTP_TIMEOUT = 300.0


def create_provider(name: str, settings: ProviderRouting | None = None) -> Provider:
    """Create one provider instance.

    Args:
        name: Provider name (ollama, groq, openai, anthropic).
        settings: Optional routing settings with base URL, timeout,
            API key variable and default model.

    Returns:
        Configured provider.

    Raises:
        ProviderError: If the provider is unknown or cannot be configured
            (for example, a missing API key).
    """
    timeout = _DEFAULT_HTTP_TIMEOUT
    base_url = None
    default_model = None
    key_env = _API_KEY_ENV.get(name)
    if settings is not None:
        timeout = settings.timeout or timeout
        base_url = settings.base_url
        default_model = settings.default_model or next(iter(settings.enabled_models()), None)
        key_env = settings.api_key_env or key_env

    api_key = os.getenv(key_env) if key_env else None

    if name == "ollama":
        kwargs = {"default_model": default_model} if default_model else {}
        return OllamaProvider(host=base_url, timeout=timeout, **kwargs)
    if name in ("openai", "groq"):
        return OpenAIProvider(
            api_key=api_key,
            default_model=default_model,
            base_url=base_url,
            name=name,
            timeout=timeout,
        )
    if name == "anthropic":
        kwargs = {"default_model": default_model} if default_model else {}
        return AnthropicProvider(api_key=api_key, base_url=base_url, timeout=timeout, **kwargs)

    log.error("provider_unknown", provider=name)
    raise ProviderError(name, f"Unknown provider: {name}")


def create_registry(routing: RoutingConfiguration) -> ProviderRegistry:
    """Build a registry holding every enabled, usable provider.

    Providers disabled in the routing configuration are not built. Cloud
    providers without an API key are skipped with a log message, so a
    machine with only Ollama still gets a working registry.

    Args:
        routing: Routing configuration.

    Returns:
        Registry in KNOWN_PROVIDERS order, then any extra configured names.
    """
    registry = ProviderRegistry()
    names = list(KNOWN_PROVIDERS) + [n for n in routing.providers if n not in KNOWN_PROVIDERS]
    for name in names:
        settings = routing.provider(name)
        if settings is not None and not settings.enabled:
            log.debug("provider_disabled", provider=name)
            continue
        try:
            provider = create_provider(name, settings)
        except ProviderError as e:
            log.info("provider_unavailable", provider=name, reason=str(e))
            continue
        registry.register(provider)
    return registry
