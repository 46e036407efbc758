"""OpenAI-compatible LLM provider implementation.

Serves both OpenAI and Groq, which exposes the same chat-completions API
under a different base URL.
"""

from __future__ import annotations

import json
import os
from typing import Any

import httpx

from skillrunner.providers.base import (
    ChunkHandler,
    CompletionRequest,
    CompletionResponse,
    ProviderAuthError,
    ProviderConnectionError,
    ProviderError,
    ProviderInfo,
    ProviderTimeoutError,
    check_response,
)

# name -> (default base URL, API key env var, default model)
OPENAI_COMPATIBLE_BACKENDS: dict[str, tuple[str, str, str]] = {
    "openai": ("https://api.openai.com/v1", "OPENAI_API_KEY", "gpt-4o-mini"),
    "groq": ("https://api.groq.com/openai/v1", "GROQ_API_KEY", "llama-3.1-8b-instant"),
}


class OpenAIProvider:
    """OpenAI-compatible chat-completions provider.

    Requires an API key, read from the backend's environment variable
    when not passed explicitly.
    """

    def __init__(
        self,
        api_key: str | None = None,
        default_model: str | None = None,
        base_url: str | None = None,
        name: str = "openai",
        timeout: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the provider.

        Args:
            api_key: API key. Defaults to the backend's env var
                (OPENAI_API_KEY or GROQ_API_KEY).
            default_model: Default model for completions.
            base_url: Custom API base URL (for compatible endpoints).
            name: Registry name, "openai" or "groq".
            timeout: HTTP timeout in seconds.
            transport: Optional httpx transport (used by tests).

        Raises:
            ProviderAuthError: If no API key is available.
        """
        default_url, key_env, fallback_model = OPENAI_COMPATIBLE_BACKENDS.get(
            name, OPENAI_COMPATIBLE_BACKENDS["openai"]
        )
        self._name = name
        self._api_key = api_key or os.getenv(key_env)
        if not self._api_key:
            raise ProviderAuthError(
                name,
                f"API key required. Set {key_env} environment variable.",
            )

        self._default_model = default_model or fallback_model
        self._base_url = (base_url or default_url).rstrip("/")
        self._client = httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
        )
        self._info = ProviderInfo(
            name=name,
            description=f"{name} chat completions API",
            base_url=self._base_url,
            is_local=False,
            supports_model_control=True,
        )

    @property
    def info(self) -> ProviderInfo:
        """Return the provider's static capabilities."""
        return self._info

    @property
    def default_model(self) -> str:
        """Return the default model for this provider."""
        return self._default_model

    def _payload(self, request: CompletionRequest, *, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": request.model_id or self._default_model,
            "messages": [dict(m) for m in request.messages],
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
        }
        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        return payload

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        """Generate a completion from the given request.

        Raises:
            ProviderConnectionError: If connection fails.
            ProviderTimeoutError: If the request times out.
            ProviderAuthError: If the API key is rejected.
            ProviderRateLimitError: If rate limit is exceeded.
            ProviderError: For other API errors.
        """
        model = request.model_id or self._default_model
        url = f"{self._base_url}/chat/completions"

        try:
            response = await self._client.post(url, json=self._payload(request, stream=False))
        except httpx.ConnectError as e:
            raise ProviderConnectionError(
                self._name,
                f"Failed to connect to {self._base_url}: {e}",
            ) from e
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(self._name, f"Request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ProviderConnectionError(self._name, f"HTTP error: {e}") from e

        check_response(self._name, response, model)

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(self._name, f"Invalid JSON response: {e}") from e

        choices = data.get("choices", [])
        if not choices:
            raise ProviderError(self._name, "Empty response from API")

        choice = choices[0]
        usage = data.get("usage", {})
        return CompletionResponse(
            content=choice.get("message", {}).get("content") or "",
            model_used=data.get("model", model),
            input_tokens=usage.get("prompt_tokens", 0),
            output_tokens=usage.get("completion_tokens", 0),
            finish_reason=choice.get("finish_reason") or "stop",
        )

    async def stream(
        self,
        request: CompletionRequest,
        on_chunk: ChunkHandler,
    ) -> CompletionResponse:
        """Stream a completion over server-sent events.

        Raises:
            ProviderConnectionError: If connection fails.
            ProviderTimeoutError: If the request times out.
            ProviderError: For API errors or malformed events.
        """
        model = request.model_id or self._default_model
        url = f"{self._base_url}/chat/completions"
        parts: list[str] = []
        model_used = model
        finish_reason = "stop"
        usage: dict[str, Any] = {}

        try:
            async with self._client.stream(
                "POST", url, json=self._payload(request, stream=True)
            ) as response:
                if response.status_code != 200:
                    await response.aread()
                    check_response(self._name, response, model)
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    body = line[len("data:") :].strip()
                    if body == "[DONE]":
                        break
                    try:
                        event = json.loads(body)
                    except ValueError as e:
                        raise ProviderError(self._name, f"Invalid stream event: {e}") from e

                    model_used = event.get("model", model_used)
                    if event.get("usage"):
                        usage = event["usage"]
                    for choice in event.get("choices", []):
                        fragment = choice.get("delta", {}).get("content")
                        if fragment:
                            parts.append(fragment)
                            await on_chunk(fragment)
                        if choice.get("finish_reason"):
                            finish_reason = choice["finish_reason"]
        except httpx.ConnectError as e:
            raise ProviderConnectionError(
                self._name,
                f"Failed to connect to {self._base_url}: {e}",
            ) from e
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(self._name, f"Stream timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ProviderConnectionError(self._name, f"HTTP error: {e}") from e

        return CompletionResponse(
            content="".join(parts),
            model_used=model_used,
            input_tokens=usage.get("prompt_tokens", 0),
            output_tokens=usage.get("completion_tokens", 0),
            finish_reason=finish_reason,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()
