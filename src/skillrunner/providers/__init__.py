"""LLM provider adapters."""

from skillrunner.providers.anthropic_provider import AnthropicProvider
from skillrunner.providers.base import (
    ChunkHandler,
    CompletionRequest,
    CompletionResponse,
    Message,
    Provider,
    ProviderAuthError,
    ProviderConnectionError,
    ProviderError,
    ProviderExhaustedError,
    ProviderInfo,
    ProviderModelError,
    ProviderRateLimitError,
    ProviderTimeoutError,
)
from skillrunner.providers.factory import create_provider, create_registry
from skillrunner.providers.ollama import OllamaProvider
from skillrunner.providers.openai_provider import OpenAIProvider
from skillrunner.providers.registry import ProviderRegistry

__all__ = [
    "AnthropicProvider",
    "ChunkHandler",
    "CompletionRequest",
    "CompletionResponse",
    "Message",
    "OllamaProvider",
    "OpenAIProvider",
    "Provider",
    "ProviderAuthError",
    "ProviderConnectionError",
    "ProviderError",
    "ProviderExhaustedError",
    "ProviderInfo",
    "ProviderModelError",
    "ProviderRateLimitError",
    "ProviderRegistry",
    "ProviderTimeoutError",
    "create_provider",
    "create_registry",
]
