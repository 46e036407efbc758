"""Known models: context windows, tiers and list prices."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ModelProperties:
    """Known properties for a specific model.

    Used in the KNOWN_MODELS registry. Prices are per single token in USD.
    """

    context_window: int
    cost_per_input_token: float = 0.0
    cost_per_output_token: float = 0.0
    tier: str = "balanced"


def _per_million(price: float) -> float:
    return price / 1_000_000


# Known model properties by provider and model name.
KNOWN_MODELS: dict[str, dict[str, ModelProperties]] = {
    "ollama": {
        "qwen2.5:7b": ModelProperties(context_window=32_768, tier="cheap"),
        "qwen2.5:14b": ModelProperties(context_window=32_768, tier="balanced"),
        "qwen3:8b": ModelProperties(context_window=32_768, tier="cheap"),
        "llama3.1:8b": ModelProperties(context_window=128_000, tier="cheap"),
        "llama3.2:3b": ModelProperties(context_window=128_000, tier="cheap"),
        "mistral:7b": ModelProperties(context_window=32_768, tier="cheap"),
        "deepseek-coder-v2:16b": ModelProperties(context_window=128_000, tier="balanced"),
    },
    "groq": {
        "llama-3.1-8b-instant": ModelProperties(
            context_window=128_000,
            cost_per_input_token=_per_million(0.05),
            cost_per_output_token=_per_million(0.08),
            tier="cheap",
        ),
        "llama-3.3-70b-versatile": ModelProperties(
            context_window=128_000,
            cost_per_input_token=_per_million(0.59),
            cost_per_output_token=_per_million(0.79),
            tier="balanced",
        ),
    },
    "openai": {
        "gpt-4o-mini": ModelProperties(
            context_window=128_000,
            cost_per_input_token=_per_million(0.15),
            cost_per_output_token=_per_million(0.60),
            tier="balanced",
        ),
        "gpt-4o": ModelProperties(
            context_window=128_000,
            cost_per_input_token=_per_million(2.50),
            cost_per_output_token=_per_million(10.00),
            tier="premium",
        ),
        "gpt-4.1": ModelProperties(
            context_window=1_000_000,
            cost_per_input_token=_per_million(2.00),
            cost_per_output_token=_per_million(8.00),
            tier="premium",
        ),
    },
    "anthropic": {
        "claude-3-5-haiku-latest": ModelProperties(
            context_window=200_000,
            cost_per_input_token=_per_million(0.80),
            cost_per_output_token=_per_million(4.00),
            tier="balanced",
        ),
        "claude-sonnet-4-20250514": ModelProperties(
            context_window=200_000,
            cost_per_input_token=_per_million(3.00),
            cost_per_output_token=_per_million(15.00),
            tier="premium",
        ),
    },
}


def get_model_properties(provider: str, model: str) -> ModelProperties | None:
    """Look up a model in KNOWN_MODELS, or None if it is not listed."""
    return KNOWN_MODELS.get(provider.lower(), {}).get(model)
