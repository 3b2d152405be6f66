"""LiteLLM-backed provider adapters.

Every upstream (Together, OpenAI, Nebius) is reached through
litellm.acompletion() with per-provider credentials and base URL, so the
rest of the pipeline sees one interface:

- complete(messages) -> full reply text
- stream(messages)   -> async iterator of text deltas

This module:
- Normalizes litellm / httpx failures to the ProviderError hierarchy
- Bounds every upstream call (and every gap between stream chunks) with a timeout
- Logs token usage reported by the provider
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

import litellm
import structlog

log = structlog.get_logger(__name__)


class ProviderError(Exception):
    """Base exception for all upstream provider failures.

    ``retryable`` tells the fallback policy whether the next route may be
    tried. Only a request the upstream rejected as invalid is fatal.
    """

    retryable: bool = True

    def __init__(self, message: str, *, adapter_id: str = "", upstream_model: str = "") -> None:
        super().__init__(message)
        self.adapter_id = adapter_id
        self.upstream_model = upstream_model


class ProviderTimeoutError(ProviderError):
    """Upstream did not answer (or stopped streaming) within the deadline."""


class ProviderQuotaError(ProviderError):
    """Upstream rate limit or quota exceeded."""


class ProviderMalformedResponseError(ProviderError):
    """Upstream answered 2xx but the body had no usable content."""


class ProviderUnavailableError(ProviderError):
    """Network failure, 5xx, or credentials rejected by the upstream."""


class ProviderRequestError(ProviderError):
    """Upstream rejected the request itself (400, context window exceeded)."""

    retryable = False


def normalize_provider_error(exc: BaseException, *, adapter_id: str, upstream_model: str) -> ProviderError:
    """Map a litellm / transport exception onto the ProviderError hierarchy."""
    if isinstance(exc, ProviderError):
        return exc

    ctx = {"adapter_id": adapter_id, "upstream_model": upstream_model}
    if isinstance(exc, (asyncio.TimeoutError, litellm.exceptions.Timeout)):
        return ProviderTimeoutError(f"{adapter_id} timed out: {exc}", **ctx)
    if isinstance(exc, litellm.exceptions.RateLimitError):
        return ProviderQuotaError(f"{adapter_id} rate limited: {exc}", **ctx)
    if isinstance(exc, litellm.exceptions.BadRequestError):
        return ProviderRequestError(f"{adapter_id} rejected request: {exc}", **ctx)
    if isinstance(exc, (AttributeError, IndexError, KeyError, TypeError)):
        return ProviderMalformedResponseError(f"{adapter_id} returned malformed body: {exc}", **ctx)
    return ProviderUnavailableError(f"{adapter_id} unavailable: {exc}", **ctx)


class ProviderAdapter(ABC):
    """One upstream provider account.

    Attributes:
        adapter_id: Stable identifier used in routes and logs ("together", "openai", ...)
        supports_streaming: False for upstreams that are only called in
            one-shot mode; the router wraps those into a single delta.
    """

    adapter_id: str
    supports_streaming: bool = True

    @abstractmethod
    async def complete(
        self,
        messages: list[dict[str, str]],
        *,
        model: str,
        max_tokens: int | None = None,
    ) -> str:
        """Return the full reply text for messages."""

    @abstractmethod
    def stream(
        self,
        messages: list[dict[str, str]],
        *,
        model: str,
    ) -> AsyncIterator[str]:
        """Yield reply text deltas as the upstream produces them."""


class LiteLLMAdapter(ProviderAdapter):
    """Provider adapter calling litellm.acompletion with explicit credentials."""

    def __init__(
        self,
        adapter_id: str,
        *,
        api_key: str,
        api_base: str | None = None,
        supports_streaming: bool = True,
        stream_timeout: float = 30.0,
        completion_timeout: float = 30.0,
        temperature: float = 0.7,
    ) -> None:
        self.adapter_id = adapter_id
        self.supports_streaming = supports_streaming
        self._api_key = api_key
        self._api_base = api_base
        self._stream_timeout = stream_timeout
        self._completion_timeout = completion_timeout
        self._temperature = temperature

    def _request_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"api_key": self._api_key, "temperature": self._temperature}
        if self._api_base:
            kwargs["api_base"] = self._api_base
        return kwargs

    async def complete(
        self,
        messages: list[dict[str, str]],
        *,
        model: str,
        max_tokens: int | None = None,
    ) -> str:
        """Send a one-shot chat completion.

        Raises:
            ProviderError: Any upstream failure, normalized
        """
        log.debug(
            "llm.completion_request",
            adapter=self.adapter_id,
            model=model,
            message_count=len(messages),
            max_tokens=max_tokens,
        )
        kwargs = self._request_kwargs()
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens

        try:
            response = await asyncio.wait_for(
                litellm.acompletion(model=model, messages=messages, **kwargs),
                timeout=self._completion_timeout,
            )
            content = response.choices[0].message.content
        except Exception as exc:
            raise normalize_provider_error(exc, adapter_id=self.adapter_id, upstream_model=model) from exc

        if content is None:
            raise ProviderMalformedResponseError(
                f"{self.adapter_id} returned no message content",
                adapter_id=self.adapter_id,
                upstream_model=model,
            )

        usage = getattr(response, "usage", None)
        if usage:
            log.info(
                "llm.completion_done",
                adapter=self.adapter_id,
                model=model,
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
            )
        return content

    async def stream(
        self,
        messages: list[dict[str, str]],
        *,
        model: str,
    ) -> AsyncIterator[str]:
        """Stream a chat completion, yielding non-empty text deltas.

        The stream timeout applies to opening the stream and to every gap
        between two chunks, so a stalled upstream cannot hold a relay open.

        Raises:
            ProviderError: Any upstream failure, normalized
        """
        log.debug(
            "llm.stream_request",
            adapter=self.adapter_id,
            model=model,
            message_count=len(messages),
        )
        try:
            response = await asyncio.wait_for(
                litellm.acompletion(model=model, messages=messages, stream=True, **self._request_kwargs()),
                timeout=self._stream_timeout,
            )
        except Exception as exc:
            raise normalize_provider_error(exc, adapter_id=self.adapter_id, upstream_model=model) from exc

        chunks = response.__aiter__()
        delta_count = 0
        try:
            while True:
                try:
                    chunk = await asyncio.wait_for(chunks.__anext__(), timeout=self._stream_timeout)
                except StopAsyncIteration:
                    break
                except Exception as exc:
                    raise normalize_provider_error(exc, adapter_id=self.adapter_id, upstream_model=model) from exc

                text = _delta_text(chunk)
                if text:
                    delta_count += 1
                    yield text
        finally:
            # Release the upstream HTTP stream on early exit (disconnect, timeout)
            await _close_stream(response, adapter_id=self.adapter_id)

        log.debug("llm.stream_done", adapter=self.adapter_id, model=model, deltas=delta_count)


def _delta_text(chunk: Any) -> str:
    """Extract the content delta from a streaming chunk.

    Chunks without choices (usage trailers) carry no text.
    """
    choices = getattr(chunk, "choices", None)
    if not choices:
        return ""
    delta = getattr(choices[0], "delta", None)
    if delta is None:
        return ""
    return getattr(delta, "content", None) or ""


async def _close_stream(response: Any, *, adapter_id: str) -> None:
    """Close a litellm stream wrapper if it exposes aclose()."""
    close = getattr(response, "aclose", None)
    if close is None:
        return
    try:
        await close()
    except Exception as exc:
        log.warning("llm.stream_close_failed", adapter=adapter_id, error=str(exc))
