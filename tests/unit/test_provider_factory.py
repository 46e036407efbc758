"""Tests for provider factory and registry."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from skillrunner.providers import (
    AnthropicProvider,
    OllamaProvider,
    OpenAIProvider,
    ProviderError,
    ProviderRegistry,
    create_provider,
    create_registry,
)
from skillrunner.providers.model_info import get_model_properties
from skillrunner.routing.config import ProviderRouting, RoutingConfiguration
from tests.fixtures.fakes import FakeProvider


@pytest.fixture(autouse=True)
def _no_api_keys(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("OPENAI_API_KEY", "GROQ_API_KEY", "ANTHROPIC_API_KEY", "OLLAMA_HOST"):
        monkeypatch.delenv(name, raising=False)


# --- create_provider ---


def test_create_ollama_without_settings() -> None:
    """Ollama needs no credentials."""
    provider = create_provider("ollama")

    assert isinstance(provider, OllamaProvider)
    assert provider.host == "http://localhost:11434"


def test_create_provider_applies_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    """Routing settings supply base URL, key variable and default model."""
    monkeypatch.setenv("TEAM_OPENAI_KEY", "sk-team")
    settings = ProviderRouting.from_dict(
        {
            "base_url": "https://proxy.internal/v1/",
            "api_key_env": "TEAM_OPENAI_KEY",
            "models": {"gpt-4o": {"tier": "premium"}},
        }
    )

    provider = create_provider("openai", settings)

    assert isinstance(provider, OpenAIProvider)
    assert provider.info.base_url == "https://proxy.internal/v1"
    assert provider.default_model == "gpt-4o"


def test_create_anthropic_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """The Anthropic key is read from ANTHROPIC_API_KEY."""
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant")

    provider = create_provider("anthropic")

    assert isinstance(provider, AnthropicProvider)
    assert provider.default_model == "claude-3-5-haiku-latest"


def test_create_provider_missing_key() -> None:
    """A cloud provider without a key cannot be created."""
    with pytest.raises(ProviderError, match="GROQ_API_KEY"):
        create_provider("groq")


def test_create_unknown_provider() -> None:
    """Unknown names are rejected."""
    with pytest.raises(ProviderError, match="Unknown provider"):
        create_provider("watsonx")


# --- create_registry ---


def test_registry_skips_providers_without_keys() -> None:
    """Only Ollama is available on a machine without API keys."""
    registry = create_registry(RoutingConfiguration())

    assert registry.names() == ["ollama"]


def test_registry_order_and_disabled(monkeypatch: pytest.MonkeyPatch) -> None:
    """Known providers register in a fixed order; disabled ones are skipped."""
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant")
    routing = RoutingConfiguration.from_dict({"providers": {"ollama": {"enabled": False}}})

    registry = create_registry(routing)

    assert registry.names() == ["openai", "anthropic"]
    assert "ollama" not in registry


def test_registry_skips_unknown_configured_provider() -> None:
    """A configured provider the factory cannot build is left out."""
    routing = RoutingConfiguration.from_dict({"providers": {"watsonx": {"priority": 1}}})

    assert "watsonx" not in create_registry(routing)


# --- ProviderRegistry ---


def test_registry_rejects_duplicate_names() -> None:
    """Provider names are unique."""
    registry = ProviderRegistry()
    registry.register(FakeProvider("ollama", is_local=True))

    with pytest.raises(ValueError, match="already registered"):
        registry.register(FakeProvider("ollama", is_local=True))


def test_registry_lookup() -> None:
    """Providers are found by name and listed in registration order."""
    local = FakeProvider("ollama", is_local=True)
    cloud = FakeProvider("openai")
    registry = ProviderRegistry()
    registry.register(local)
    registry.register(cloud)

    assert registry.get("openai") is cloud
    assert registry.get("groq") is None
    assert [info.name for info in registry.list_providers()] == ["ollama", "openai"]
    assert len(registry) == 2


@pytest.mark.asyncio
async def test_close_all_survives_failures() -> None:
    """One provider failing to close does not stop the others."""
    broken = FakeProvider("broken")
    broken.close = AsyncMock(side_effect=RuntimeError("socket gone"))  # type: ignore[method-assign]
    healthy = FakeProvider("healthy")
    registry = ProviderRegistry()
    registry.register(broken)
    registry.register(healthy)

    await registry.close_all()

    broken.close.assert_awaited_once()
    assert healthy.closed


# --- Known models ---


def test_known_model_properties() -> None:
    """Listed models carry tiers and per-token prices."""
    props = get_model_properties("OpenAI", "gpt-4o")

    assert props is not None
    assert props.tier == "premium"
    assert props.cost_per_input_token == pytest.approx(2.5e-6)
    assert get_model_properties("openai", "unreleased") is None
