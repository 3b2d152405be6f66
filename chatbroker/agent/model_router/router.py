"""Model router: logical model id -> provider call with ordered fallback.

Two entry points:

- resolve_stream(): opens the first route that yields a first delta and
  returns a RoutedStream positioned on it. Everything up to and including
  that first delta is covered by fallback, so the caller can still answer
  with an ordinary error response when every route fails. After the first
  delta has been handed out, a broken upstream is never retried on another
  route (the client would see duplicated text); it surfaces as
  UpstreamUnavailableError from the iterator instead.
- resolve_completion(): one-shot completion with the same fallback chain.

Routes served by a non-streaming upstream are wrapped so that they yield
exactly one delta holding the full reply.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import aclosing
from typing import TYPE_CHECKING

import structlog

from chatbroker.agent.llm import ProviderAdapter
from chatbroker.agent.model_router.catalog import DEFAULT_MODEL_ID, LogicalModel, ProviderRoute
from chatbroker.agent.model_router.fallback import FallbackChain
from chatbroker.core.errors import InvalidInputError, UpstreamUnavailableError

if TYPE_CHECKING:
    from chatbroker.infra.streaming import CancellationToken

log = structlog.get_logger(__name__)


class RoutedStream:
    """Delta iterator for a route that already produced its first delta.

    Stops early (without touching the upstream again) once the optional
    cancellation token fires.
    """

    def __init__(
        self,
        model_id: str,
        route: ProviderRoute,
        first_delta: str | None,
        deltas: AsyncIterator[str],
        cancel_token: CancellationToken | None = None,
    ) -> None:
        self.model_id = model_id
        self.route = route
        self._pending = first_delta
        self._deltas = deltas
        self._cancel_token = cancel_token
        self._closed = False

    def __aiter__(self) -> RoutedStream:
        return self

    async def __anext__(self) -> str:
        if self._closed:
            raise StopAsyncIteration
        if self._cancel_token is not None and self._cancel_token.cancelled:
            await self.aclose()
            raise StopAsyncIteration
        if self._pending is not None:
            delta, self._pending = self._pending, None
            return delta

        try:
            return await self._deltas.__anext__()
        except StopAsyncIteration:
            self._closed = True
            raise
        except Exception as exc:
            self._closed = True
            log.warning(
                "model_router.stream_broken",
                model_id=self.model_id,
                adapter=self.route.adapter_id,
                error_type=type(exc).__name__,
                error_message=str(exc),
            )
            raise UpstreamUnavailableError(
                f"Upstream stream for model '{self.model_id}' failed mid-response: {exc}"
            ) from exc

    async def aclose(self) -> None:
        """Release the upstream connection. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        aclose = getattr(self._deltas, "aclose", None)
        if aclose is not None:
            await aclose()


class ModelRouter:
    """Routes chat requests for logical models to provider adapters."""

    def __init__(
        self,
        catalog: dict[str, LogicalModel],
        adapters: dict[str, ProviderAdapter],
    ) -> None:
        """Initialize the router.

        Args:
            catalog: Logical models keyed by id, each with its ordered routes
            adapters: Provider adapters keyed by adapter id
        """
        missing = {r.adapter_id for m in catalog.values() for r in m.routes} - set(adapters)
        if missing:
            raise ValueError(f"Catalog references unknown adapters: {sorted(missing)}")
        self._catalog = catalog
        self._adapters = adapters
        log.info(
            "model_router.initialized",
            models={m.id: m.available for m in catalog.values()},
        )

    # ------------------------------------------------------------------ #
    # Catalog
    # ------------------------------------------------------------------ #

    @property
    def default_model_id(self) -> str:
        return DEFAULT_MODEL_ID

    def list_models(self) -> list[LogicalModel]:
        return list(self._catalog.values())

    def get_model(self, model_id: str) -> LogicalModel:
        """Look up a logical model.

        Raises:
            InvalidInputError: Unknown model id
        """
        model = self._catalog.get(model_id)
        if model is None:
            raise InvalidInputError(f"Invalid model: {model_id}")
        return model

    # ------------------------------------------------------------------ #
    # Calls
    # ------------------------------------------------------------------ #

    async def resolve_stream(
        self,
        model_id: str,
        messages: list[dict[str, str]],
        cancel_token: CancellationToken | None = None,
    ) -> RoutedStream:
        """Open a streamed reply for a logical model.

        Returns:
            RoutedStream positioned on the first delta of the winning route

        Raises:
            InvalidInputError: Unknown model id
            UpstreamUnavailableError: No route produced a first delta
        """
        model = self.get_model(model_id)
        chain = FallbackChain(model.id, model.routes)

        async def open_route(route: ProviderRoute) -> tuple[AsyncGenerator[str, None], str | None]:
            deltas = self._deltas(self._adapters[route.adapter_id], route, messages)
            try:
                first = await deltas.__anext__()
            except StopAsyncIteration:
                return deltas, None
            except BaseException:
                await deltas.aclose()
                raise
            return deltas, first

        success = await chain.run(open_route)
        deltas, first = success.value
        log.info(
            "model_router.stream_opened",
            model_id=model.id,
            adapter=success.route.adapter_id,
            upstream_model=success.route.upstream_model,
            fallback_events=len(chain.get_fallback_events()),
        )
        return RoutedStream(model.id, success.route, first, deltas, cancel_token)

    async def resolve_completion(
        self,
        model_id: str,
        messages: list[dict[str, str]],
        *,
        max_tokens: int | None = None,
    ) -> str:
        """One-shot completion for a logical model.

        Raises:
            InvalidInputError: Unknown model id
            UpstreamUnavailableError: Every route failed
        """
        model = self.get_model(model_id)
        chain = FallbackChain(model.id, model.routes)

        async def complete(route: ProviderRoute) -> str:
            adapter = self._adapters[route.adapter_id]
            return await adapter.complete(messages, model=route.upstream_model, max_tokens=max_tokens)

        success = await chain.run(complete)
        return success.value

    @staticmethod
    async def _deltas(
        adapter: ProviderAdapter,
        route: ProviderRoute,
        messages: list[dict[str, str]],
    ) -> AsyncGenerator[str, None]:
        if not adapter.supports_streaming:
            text = await adapter.complete(messages, model=route.upstream_model)
            if text:
                yield text
            return

        async with aclosing(adapter.stream(messages, model=route.upstream_model)) as deltas:
            async for delta in deltas:
                yield delta
