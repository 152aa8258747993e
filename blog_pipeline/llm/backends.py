"""LLM backend abstraction for the stage executors.

Provides a unified streaming interface over different providers:
- AnthropicBackend: Anthropic Messages API via the async SDK
- OpenAICompatibleBackend: any /chat/completions endpoint speaking SSE
  (OpenAI, Azure-style proxies, local gateways) via httpx

Each backend handles provider-specific concerns:
- Client creation and timeout configuration
- Request shaping
- Error classification: transport errors, timeouts, HTTP 429 and 5xx become
  TransientStageFailure; other rejections become BackendRequestError

Retry and cost accounting are model-agnostic and live in the executor.
"""

import json
import logging
import os
from typing import AsyncIterator, Optional, Protocol, runtime_checkable

import httpx

from blog_pipeline.executor.errors import BackendRequestError, TransientStageFailure

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = httpx.Timeout(connect=30.0, read=300.0, write=60.0, pool=30.0)


def _is_transient_status(status_code: int) -> bool:
    return status_code == 429 or status_code == 408 or status_code >= 500


@runtime_checkable
class ModelBackend(Protocol):
    """Protocol for LLM backend implementations."""

    @property
    def model_id(self) -> str: ...

    def stream(
        self,
        system_prompt: str,
        user_message: str,
        *,
        max_tokens: int,
        temperature: float = 0.7,
        label: str = "",
    ) -> AsyncIterator[str]:
        """Yield text chunks as the model produces them."""
        ...

    async def aclose(self) -> None: ...


class AnthropicBackend:
    """Anthropic Claude backend (async SDK, streaming)."""

    def __init__(
        self,
        model_id: str = "claude-sonnet-4-6",
        api_key: Optional[str] = None,
        timeout: httpx.Timeout = DEFAULT_TIMEOUT,
    ):
        from anthropic import AsyncAnthropic

        self._model_id = model_id
        self._client = AsyncAnthropic(
            api_key=api_key or os.environ.get("ANTHROPIC_API_KEY"),
            timeout=timeout,
            max_retries=0,  # retries belong to the pipeline's RetryPolicy
        )

    @property
    def model_id(self) -> str:
        return self._model_id

    async def stream(
        self,
        system_prompt: str,
        user_message: str,
        *,
        max_tokens: int,
        temperature: float = 0.7,
        label: str = "",
    ) -> AsyncIterator[str]:
        import anthropic

        logger.info(
            f"[{label}] Anthropic stream: model={self._model_id}, "
            f"chars={len(system_prompt) + len(user_message):,}, max_tokens={max_tokens}"
        )
        try:
            async with self._client.messages.stream(
                model=self._model_id,
                max_tokens=max_tokens,
                temperature=temperature,
                system=system_prompt,
                messages=[{"role": "user", "content": user_message}],
            ) as stream:
                async for text in stream.text_stream:
                    if text:
                        yield text
        except anthropic.APIConnectionError as e:
            # Includes APITimeoutError
            raise TransientStageFailure(f"[{label}] Connection error: {e}") from e
        except anthropic.APIStatusError as e:
            if _is_transient_status(e.status_code):
                raise TransientStageFailure(
                    f"[{label}] HTTP {e.status_code} from Anthropic: {e.message}"
                ) from e
            raise BackendRequestError(
                f"[{label}] Anthropic rejected request (HTTP {e.status_code}): {e.message}"
            ) from e

    async def aclose(self) -> None:
        await self._client.close()


class OpenAICompatibleBackend:
    """Streaming client for OpenAI-style /chat/completions endpoints.

    The base URL and key come from OPENAI_BASE_URL / OPENAI_API_KEY unless
    given explicitly. Model ids may carry an "openai/" prefix, which is
    stripped before the request.
    """

    def __init__(
        self,
        model_id: str,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: httpx.Timeout = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._model_id = model_id
        self._model_name = model_id.split("/", 1)[1] if model_id.startswith("openai/") else model_id
        base = (base_url or os.environ.get("OPENAI_BASE_URL") or "https://api.openai.com/v1").rstrip("/")
        key = api_key or os.environ.get("OPENAI_API_KEY", "")
        headers = {"Content-Type": "application/json"}
        if key:
            headers["Authorization"] = f"Bearer {key}"
        self._client = httpx.AsyncClient(
            base_url=base, headers=headers, timeout=timeout, transport=transport,
        )

    @property
    def model_id(self) -> str:
        return self._model_id

    async def stream(
        self,
        system_prompt: str,
        user_message: str,
        *,
        max_tokens: int,
        temperature: float = 0.7,
        label: str = "",
    ) -> AsyncIterator[str]:
        payload = {
            "model": self._model_name,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "stream": True,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_message},
            ],
        }
        logger.info(
            f"[{label}] Chat-completions stream: model={self._model_name}, "
            f"chars={len(system_prompt) + len(user_message):,}"
        )
        try:
            async with self._client.stream("POST", "/chat/completions", json=payload) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")[:500]
                    if _is_transient_status(response.status_code):
                        raise TransientStageFailure(
                            f"[{label}] HTTP {response.status_code}: {body}"
                        )
                    raise BackendRequestError(
                        f"[{label}] Request rejected (HTTP {response.status_code}): {body}"
                    )

                async for line in response.aiter_lines():
                    text = _parse_sse_line(line)
                    if text is None:
                        continue
                    if text == "[DONE]":
                        break
                    yield text
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise TransientStageFailure(f"[{label}] {type(e).__name__}: {e}") from e

    async def aclose(self) -> None:
        await self._client.aclose()


def _parse_sse_line(line: str) -> Optional[str]:
    """Extract the delta text from one SSE line; "[DONE]" marks the end."""
    line = line.strip()
    if not line.startswith("data:"):
        return None
    data = line[len("data:"):].strip()
    if data == "[DONE]":
        return data
    try:
        event = json.loads(data)
    except json.JSONDecodeError:
        logger.debug(f"Skipping non-JSON SSE payload: {data[:80]}")
        return None
    choices = event.get("choices") or []
    if not choices:
        return None
    content = (choices[0].get("delta") or {}).get("content")
    return content or None
