"""Ollama LLM provider implementation."""

from __future__ import annotations

import json
import os
from typing import TYPE_CHECKING, Any

import httpx

from skillrunner.providers.base import (
    ChunkHandler,
    CompletionRequest,
    CompletionResponse,
    ProviderConnectionError,
    ProviderError,
    ProviderInfo,
    ProviderModelError,
    ProviderTimeoutError,
    check_response,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

DEFAULT_OLLAMA_HOST = "http://localhost:11434"


class OllamaProvider:
    """Ollama LLM provider.

    Uses the Ollama chat API. The Ollama server must be running locally or
    at the configured host. Calls cost nothing, so the provider reports
    itself as local.

    Attributes:
        host: Ollama server URL.
    """

    def __init__(
        self,
        host: str | None = None,
        default_model: str = "qwen2.5:7b",
        timeout: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the Ollama provider.

        Args:
            host: Ollama server URL. Defaults to OLLAMA_HOST env var
                or http://localhost:11434.
            default_model: Default model for completions.
            timeout: HTTP timeout in seconds.
            transport: Optional httpx transport (used by tests).
        """
        self.host = (host or os.getenv("OLLAMA_HOST") or DEFAULT_OLLAMA_HOST).rstrip("/")
        self._default_model = default_model
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._info = ProviderInfo(
            name="ollama",
            description="Local models served by Ollama",
            base_url=self.host,
            is_local=True,
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
        return {
            "model": request.model_id or self._default_model,
            "messages": [dict(m) for m in request.messages],
            "stream": stream,
            "options": {
                "temperature": request.temperature,
                "num_predict": request.max_tokens,
            },
        }

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        """Generate a completion from the given request.

        Returns:
            CompletionResponse with the generated text and token usage.

        Raises:
            ProviderConnectionError: If connection to Ollama fails.
            ProviderTimeoutError: If the request times out.
            ProviderModelError: If the model is not available.
            ProviderError: For other API errors.
        """
        model = request.model_id or self._default_model
        url = f"{self.host}/api/chat"

        try:
            response = await self._client.post(url, json=self._payload(request, stream=False))
        except httpx.ConnectError as e:
            raise ProviderConnectionError(
                "ollama",
                f"Failed to connect to Ollama at {self.host}: {e}",
            ) from e
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(
                "ollama",
                f"Request to Ollama timed out: {e}",
            ) from e
        except httpx.HTTPError as e:
            raise ProviderConnectionError("ollama", f"HTTP error: {e}") from e

        if response.status_code == 404:
            raise ProviderModelError(
                "ollama",
                f"Model '{model}' not found. Run 'ollama pull {model}' first.",
            )
        check_response("ollama", response, model)

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError("ollama", f"Invalid JSON response: {e}") from e

        message = data.get("message", {})
        done_reason = data.get("done_reason", "unknown")
        return CompletionResponse(
            content=message.get("content", ""),
            model_used=data.get("model", model),
            # Ollama reports prompt_eval_count (input) and eval_count (output)
            input_tokens=data.get("prompt_eval_count", 0),
            output_tokens=data.get("eval_count", 0),
            finish_reason="stop" if done_reason == "stop" or data.get("done") else done_reason,
        )

    async def stream(
        self,
        request: CompletionRequest,
        on_chunk: ChunkHandler,
    ) -> CompletionResponse:
        """Stream a completion as newline-delimited JSON objects.

        Args:
            request: The completion request.
            on_chunk: Awaited with each content fragment as it arrives.

        Returns:
            The aggregated CompletionResponse.

        Raises:
            ProviderConnectionError: If connection to Ollama fails.
            ProviderTimeoutError: If the request times out.
            ProviderError: For API errors or malformed stream lines.
        """
        model = request.model_id or self._default_model
        url = f"{self.host}/api/chat"
        parts: list[str] = []
        final: dict[str, Any] = {}

        try:
            async with self._client.stream(
                "POST", url, json=self._payload(request, stream=True)
            ) as response:
                if response.status_code != 200:
                    await response.aread()
                    check_response("ollama", response, model)
                async for data in _iter_ndjson(response.aiter_lines()):
                    fragment = data.get("message", {}).get("content", "")
                    if fragment:
                        parts.append(fragment)
                        await on_chunk(fragment)
                    if data.get("done"):
                        final = data
        except httpx.ConnectError as e:
            raise ProviderConnectionError(
                "ollama",
                f"Failed to connect to Ollama at {self.host}: {e}",
            ) from e
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError("ollama", f"Stream from Ollama timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ProviderConnectionError("ollama", f"HTTP error: {e}") from e

        return CompletionResponse(
            content="".join(parts),
            model_used=final.get("model", model),
            input_tokens=final.get("prompt_eval_count", 0),
            output_tokens=final.get("eval_count", 0),
            finish_reason=final.get("done_reason", "stop"),
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()


async def _iter_ndjson(lines: AsyncIterator[str]) -> AsyncIterator[dict[str, Any]]:
    async for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            data = json.loads(line)
        except ValueError as e:
            raise ProviderError("ollama", f"Invalid stream line: {e}") from e
        if "error" in data:
            raise ProviderError("ollama", str(data["error"]))
        yield data
