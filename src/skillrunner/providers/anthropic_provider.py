"""Anthropic Messages API provider implementation."""

from __future__ import annotations

import json
import os
from typing import Any

import httpx

from skillrunner.providers.base import (
    ChunkHandler,
    CompletionRequest,
    CompletionResponse,
    Message,
    ProviderAuthError,
    ProviderConnectionError,
    ProviderError,
    ProviderInfo,
    ProviderTimeoutError,
    check_response,
)

ANTHROPIC_API_URL = "https://api.anthropic.com/v1"
ANTHROPIC_VERSION = "2023-06-01"


def _split_system(messages: list[Message]) -> tuple[str, list[dict[str, str]]]:
    """Separate system messages, which the Messages API takes as a top-level field."""
    system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
    rest = [dict(m) for m in messages if m["role"] != "system"]
    return system, rest


class AnthropicProvider:
    """Anthropic Claude provider over the Messages API.

    Requires an API key, read from ANTHROPIC_API_KEY when not passed.
    """

    def __init__(
        self,
        api_key: str | None = None,
        default_model: str = "claude-3-5-haiku-latest",
        base_url: str | None = None,
        timeout: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the Anthropic provider.

        Args:
            api_key: API key. Defaults to ANTHROPIC_API_KEY env var.
            default_model: Default model for completions.
            base_url: Custom API base URL.
            timeout: HTTP timeout in seconds.
            transport: Optional httpx transport (used by tests).

        Raises:
            ProviderAuthError: If no API key is available.
        """
        self._api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
        if not self._api_key:
            raise ProviderAuthError(
                "anthropic",
                "API key required. Set ANTHROPIC_API_KEY environment variable.",
            )

        self._default_model = default_model
        self._base_url = (base_url or ANTHROPIC_API_URL).rstrip("/")
        self._client = httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            headers={
                "x-api-key": self._api_key,
                "anthropic-version": ANTHROPIC_VERSION,
                "content-type": "application/json",
            },
        )
        self._info = ProviderInfo(
            name="anthropic",
            description="Anthropic Claude models",
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
        system, messages = _split_system(request.messages)
        payload: dict[str, Any] = {
            "model": request.model_id or self._default_model,
            "messages": messages,
            "max_tokens": request.max_tokens,
            # The Messages API caps temperature at 1.0
            "temperature": min(request.temperature, 1.0),
        }
        if system:
            payload["system"] = system
        if stream:
            payload["stream"] = True
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

        try:
            response = await self._client.post(
                f"{self._base_url}/messages", json=self._payload(request, stream=False)
            )
        except httpx.ConnectError as e:
            raise ProviderConnectionError(
                "anthropic", f"Failed to connect to Anthropic API: {e}"
            ) from e
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError("anthropic", f"Request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ProviderConnectionError("anthropic", f"HTTP error: {e}") from e

        check_response("anthropic", response, model)

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError("anthropic", f"Invalid JSON response: {e}") from e

        text = "".join(
            block.get("text", "")
            for block in data.get("content", [])
            if block.get("type") == "text"
        )
        usage = data.get("usage", {})
        return CompletionResponse(
            content=text,
            model_used=data.get("model", model),
            input_tokens=usage.get("input_tokens", 0),
            output_tokens=usage.get("output_tokens", 0),
            finish_reason=data.get("stop_reason") or "end_turn",
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
            ProviderError: For API errors, error events or malformed events.
        """
        model = request.model_id or self._default_model
        parts: list[str] = []
        model_used = model
        input_tokens = 0
        output_tokens = 0
        finish_reason = "end_turn"

        try:
            async with self._client.stream(
                "POST", f"{self._base_url}/messages", json=self._payload(request, stream=True)
            ) as response:
                if response.status_code != 200:
                    await response.aread()
                    check_response("anthropic", response, model)
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    try:
                        event = json.loads(line[len("data:") :].strip())
                    except ValueError as e:
                        raise ProviderError("anthropic", f"Invalid stream event: {e}") from e

                    kind = event.get("type")
                    if kind == "message_start":
                        message = event.get("message", {})
                        model_used = message.get("model", model_used)
                        input_tokens = message.get("usage", {}).get("input_tokens", 0)
                    elif kind == "content_block_delta":
                        fragment = event.get("delta", {}).get("text", "")
                        if fragment:
                            parts.append(fragment)
                            await on_chunk(fragment)
                    elif kind == "message_delta":
                        output_tokens = event.get("usage", {}).get("output_tokens", output_tokens)
                        finish_reason = event.get("delta", {}).get("stop_reason") or finish_reason
                    elif kind == "error":
                        detail = event.get("error", {}).get("message", "stream error")
                        raise ProviderError("anthropic", detail)
        except httpx.ConnectError as e:
            raise ProviderConnectionError(
                "anthropic", f"Failed to connect to Anthropic API: {e}"
            ) from e
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError("anthropic", f"Stream timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ProviderConnectionError("anthropic", f"HTTP error: {e}") from e

        return CompletionResponse(
            content="".join(parts),
            model_used=model_used,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            finish_reason=finish_reason,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()
