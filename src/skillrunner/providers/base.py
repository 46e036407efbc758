"""Base protocol and types for LLM providers."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal, Protocol, TypedDict, runtime_checkable

from skillrunner.errors import SkillRunnerError

if TYPE_CHECKING:
    import httpx


class Message(TypedDict):
    """A single message in a conversation.

    Attributes:
        role: Message role - "system", "user" or "assistant".
        content: Message content text.
    """

    role: Literal["system", "user", "assistant"]
    content: str


@dataclass(frozen=True)
class ProviderInfo:
    """Static capabilities of a provider backend.

    The router selects providers through these flags rather than by
    branching on provider names.

    Attributes:
        name: Registry name (e.g. "ollama", "groq").
        description: Human-readable description.
        base_url: API endpoint the provider talks to.
        is_local: True when calls run on this machine at zero marginal cost.
        supports_model_control: True when the caller may choose the model.
    """

    name: str
    description: str = ""
    base_url: str = ""
    is_local: bool = False
    supports_model_control: bool = True


@dataclass
class CompletionRequest:
    """A single completion call.

    Attributes:
        model_id: Model to use. Empty string means the provider default.
        messages: Conversation messages in order.
        max_tokens: Maximum tokens to generate.
        temperature: Sampling temperature (0.0 to 2.0).
    """

    model_id: str
    messages: list[Message]
    max_tokens: int = 4096
    temperature: float = 0.7


@dataclass
class CompletionResponse:
    """Response from a completion or streaming call.

    Attributes:
        content: Generated text.
        model_used: Model that produced the text.
        input_tokens: Prompt tokens consumed.
        output_tokens: Generated tokens.
        finish_reason: Why generation ended ("stop", "length", ...).
    """

    content: str
    model_used: str
    input_tokens: int = 0
    output_tokens: int = 0
    finish_reason: str = field(default="stop")

    @property
    def total_tokens(self) -> int:
        """Input plus output tokens."""
        return self.input_tokens + self.output_tokens


# Receives each streamed text fragment in order
ChunkHandler = Callable[[str], Awaitable[None]]


@runtime_checkable
class Provider(Protocol):
    """Protocol for LLM providers.

    Implementations must be safe for concurrent use by several phase tasks
    sharing one instance.
    """

    @property
    def info(self) -> ProviderInfo:
        """Return the provider's static capabilities."""
        ...

    @property
    def default_model(self) -> str:
        """Return the model used when a request names none."""
        ...

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        """Generate a completion.

        Raises:
            ProviderError: If the completion request fails.
        """
        ...

    async def stream(
        self,
        request: CompletionRequest,
        on_chunk: ChunkHandler,
    ) -> CompletionResponse:
        """Generate a completion, passing each text fragment to ``on_chunk``.

        Returns:
            The aggregated response once the stream ends.

        Raises:
            ProviderError: If the request fails before or during streaming.
        """
        ...

    async def close(self) -> None:
        """Release network resources."""
        ...


class ProviderError(SkillRunnerError):
    """Base exception for provider errors."""

    def __init__(self, provider: str, message: str) -> None:
        self.provider = provider
        super().__init__(f"[{provider}] {message}")


class ProviderConnectionError(ProviderError):
    """Raised when connection to the provider fails."""


class ProviderTimeoutError(ProviderError):
    """Raised when a provider call exceeds its timeout."""


class ProviderAuthError(ProviderError):
    """Raised when the provider rejects the credentials."""


class ProviderRateLimitError(ProviderError):
    """Raised when rate limit is exceeded."""


class ProviderModelError(ProviderError):
    """Raised when the requested model is unavailable."""


class ProviderExhaustedError(ProviderError):
    """Raised when every entry of the fallback chain failed.

    Attributes:
        attempts: (provider, error message) for each failed attempt, in order.
    """

    def __init__(self, attempts: list[tuple[str, str]]) -> None:
        self.attempts = attempts
        tried = ", ".join(name for name, _ in attempts) or "none"
        last = attempts[-1][1] if attempts else "no candidates"
        super().__init__("router", f"all providers failed (tried: {tried}); last error: {last}")


def check_response(provider: str, response: httpx.Response, model: str) -> None:
    """Translate a non-200 HTTP status into the provider error taxonomy.

    The response body must already be read.

    Raises:
        ProviderAuthError: On 401/403.
        ProviderModelError: On 404.
        ProviderRateLimitError: On 429.
        ProviderError: On any other non-200 status.
    """
    status = response.status_code
    if status == 200:
        return
    if status in (401, 403):
        raise ProviderAuthError(provider, f"Authentication failed (status {status}).")
    if status == 404:
        raise ProviderModelError(provider, f"Model '{model}' not found.")
    if status == 429:
        raise ProviderRateLimitError(provider, "Rate limit exceeded. Please wait before retrying.")
    raise ProviderError(provider, f"API error (status {status}): {response.text}")
