"""Routing configuration: providers, profiles and the fallback chain."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

from skillrunner.errors import ConfigurationError
from skillrunner.skills.models import PROFILES

DEFAULT_PROVIDER = "ollama"
DEFAULT_FALLBACK_CHAIN = ["ollama", "groq", "openai", "anthropic"]


@dataclass
class ModelConfig:
    """Per-model settings within a provider.

    Prices are per single token in USD.
    """

    tier: str = "balanced"
    cost_per_input_token: float = 0.0
    cost_per_output_token: float = 0.0
    max_tokens: int = 0
    context_window: int = 0
    enabled: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ModelConfig:
        """Create config from dictionary."""
        return cls(
            tier=str(data.get("tier", "balanced")),
            cost_per_input_token=float(data.get("cost_per_input_token", 0.0)),
            cost_per_output_token=float(data.get("cost_per_output_token", 0.0)),
            max_tokens=int(data.get("max_tokens", 0)),
            context_window=int(data.get("context_window", 0)),
            enabled=bool(data.get("enabled", True)),
        )


@dataclass
class RateLimits:
    """Per-provider request limits. Zero means unlimited."""

    requests_per_minute: int = 0
    tokens_per_minute: int = 0
    concurrent_requests: int = 0
    burst_limit: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RateLimits:
        """Create limits from dictionary."""
        return cls(
            requests_per_minute=int(data.get("requests_per_minute", 0)),
            tokens_per_minute=int(data.get("tokens_per_minute", 0)),
            concurrent_requests=int(data.get("concurrent_requests", 0)),
            burst_limit=int(data.get("burst_limit", 0)),
        )


@dataclass
class ProviderRouting:
    """Routing settings for one provider.

    Attributes:
        enabled: Whether the router may select this provider.
        priority: Lower values are preferred; ties keep registration order.
        models: Model table keyed by model id, in preference order.
        rate_limits: Request limits enforced by the router.
        base_url: Endpoint override used when the provider is built.
        timeout: Per-call timeout in seconds (None = no router timeout).
        api_key_env: Environment variable holding the API key.
        default_model: Model used when the table names none.
    """

    enabled: bool = True
    priority: int = 0
    models: dict[str, ModelConfig] = field(default_factory=dict)
    rate_limits: RateLimits = field(default_factory=RateLimits)
    base_url: str | None = None
    timeout: float | None = None
    api_key_env: str | None = None
    default_model: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProviderRouting:
        """Create provider settings from dictionary."""
        models = {
            str(name): ModelConfig.from_dict(dict(cfg or {}))
            for name, cfg in dict(data.get("models") or {}).items()
        }
        timeout = data.get("timeout")
        return cls(
            enabled=bool(data.get("enabled", True)),
            priority=int(data.get("priority", 0)),
            models=models,
            rate_limits=RateLimits.from_dict(dict(data.get("rate_limits") or {})),
            base_url=data.get("base_url"),
            timeout=float(timeout) if timeout is not None else None,
            api_key_env=data.get("api_key_env"),
            default_model=data.get("default_model"),
        )

    def enabled_models(self) -> list[str]:
        """Enabled model ids in table order."""
        return [name for name, cfg in self.models.items() if cfg.enabled]


@dataclass
class ProfileConfig:
    """Preferences attached to one routing profile."""

    generation_model: str = ""
    review_model: str = ""
    fallback_model: str = ""
    max_context_tokens: int = 0
    prefer_local: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProfileConfig:
        """Create profile settings from dictionary."""
        return cls(
            generation_model=str(data.get("generation_model") or ""),
            review_model=str(data.get("review_model") or ""),
            fallback_model=str(data.get("fallback_model") or ""),
            max_context_tokens=int(data.get("max_context_tokens", 0)),
            prefer_local=bool(data.get("prefer_local", False)),
        )


def _default_profiles() -> dict[str, ProfileConfig]:
    return {
        "cheap": ProfileConfig(max_context_tokens=4096, prefer_local=True),
        "balanced": ProfileConfig(max_context_tokens=8192, prefer_local=True),
        "premium": ProfileConfig(max_context_tokens=128_000, prefer_local=False),
    }


@dataclass
class RoutingConfiguration:
    """Everything the router needs to pick a provider and model.

    Attributes:
        default_provider: Provider assumed when nothing else is configured.
        providers: Per-provider settings keyed by registry name.
        profiles: Per-profile preferences keyed by profile name.
        fallback_chain: Provider names tried in order when a choice fails.
    """

    default_provider: str = DEFAULT_PROVIDER
    providers: dict[str, ProviderRouting] = field(default_factory=dict)
    profiles: dict[str, ProfileConfig] = field(default_factory=_default_profiles)
    fallback_chain: list[str] = field(default_factory=lambda: list(DEFAULT_FALLBACK_CHAIN))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RoutingConfiguration:
        """Create routing configuration from dictionary.

        Profiles given in ``data`` override the built-in defaults field by field.

        Raises:
            ConfigurationError: If the resulting configuration is invalid.
        """
        profiles = _default_profiles()
        for name, cfg in dict(data.get("profiles") or {}).items():
            merged = {**asdict(profiles[name]), **dict(cfg or {})} if name in profiles else cfg
            profiles[str(name)] = ProfileConfig.from_dict(dict(merged or {}))

        chain = data.get("fallback_chain")
        if chain is None:
            chain = DEFAULT_FALLBACK_CHAIN
        config = cls(
            default_provider=str(data.get("default_provider") or DEFAULT_PROVIDER),
            providers={
                str(name): ProviderRouting.from_dict(dict(cfg or {}))
                for name, cfg in dict(data.get("providers") or {}).items()
            },
            profiles=profiles,
            fallback_chain=[str(p) for p in chain],
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Check the configuration for invalid values.

        Raises:
            ConfigurationError: Listing every problem found.
        """
        problems: list[str] = []
        if not self.default_provider:
            problems.append("default_provider is required")
        for name in self.profiles:
            if name not in PROFILES:
                problems.append(f"unknown profile '{name}'")
        for entry in self.fallback_chain:
            if not entry.strip():
                problems.append("fallback_chain contains an empty entry")
        for name, provider in self.providers.items():
            if provider.priority < 0:
                problems.append(f"provider '{name}': priority must be >= 0")
            if provider.timeout is not None and provider.timeout <= 0:
                problems.append(f"provider '{name}': timeout must be > 0")
            limits = provider.rate_limits
            if min(limits.requests_per_minute, limits.concurrent_requests, limits.burst_limit) < 0:
                problems.append(f"provider '{name}': rate limits must be >= 0")
            for model_id, model in provider.models.items():
                if model.cost_per_input_token < 0 or model.cost_per_output_token < 0:
                    problems.append(f"provider '{name}' model '{model_id}': costs must be >= 0")
                if model.tier not in PROFILES:
                    problems.append(
                        f"provider '{name}' model '{model_id}': unknown tier '{model.tier}'"
                    )
        if problems:
            raise ConfigurationError("invalid routing configuration: " + "; ".join(problems))

    def profile(self, name: str) -> ProfileConfig:
        """Return settings for a profile, or empty defaults if unconfigured."""
        return self.profiles.get(name) or ProfileConfig()

    def provider(self, name: str) -> ProviderRouting | None:
        """Return settings for a provider, or None if unconfigured."""
        return self.providers.get(name)

    def model(self, provider: str, model_id: str) -> ModelConfig | None:
        """Return the configured model entry, or None."""
        settings = self.providers.get(provider)
        if settings is None:
            return None
        return settings.models.get(model_id)
