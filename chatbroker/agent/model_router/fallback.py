"""Fallback chain over a logical model's provider routes.

Each attempt produces an outcome from a small tagged union:

    AdapterSuccess | RetryableFailure | FatalFailure

and a pure policy function, next_action(), decides what happens next:
RETURN the value, TRY_NEXT route, or FAIL the chain. Keeping the policy
pure makes the fallback rules testable without any provider.

Fallback strategy:
1. Try the primary route
2. On a retryable failure, try the next route with its own upstream model
3. On a fatal failure (request rejected as invalid), stop immediately
4. If all routes fail, raise UpstreamUnavailableError with the last error
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Generic, TypeVar

import structlog

from chatbroker.agent.llm import ProviderError, ProviderUnavailableError
from chatbroker.agent.model_router.catalog import ProviderRoute
from chatbroker.core.errors import UpstreamUnavailableError

log = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class AdapterSuccess(Generic[T]):
    route: ProviderRoute
    value: T


@dataclass(frozen=True)
class RetryableFailure:
    route: ProviderRoute
    error: ProviderError


@dataclass(frozen=True)
class FatalFailure:
    route: ProviderRoute
    error: ProviderError


AdapterOutcome = AdapterSuccess[Any] | RetryableFailure | FatalFailure


class FallbackAction(StrEnum):
    RETURN = "return"
    TRY_NEXT = "try_next"
    FAIL = "fail"


def classify_failure(route: ProviderRoute, exc: Exception) -> RetryableFailure | FatalFailure:
    """Wrap an attempt's exception in the matching outcome type.

    Anything that is not already a ProviderError (a bug in an adapter, an
    unexpected library error) is treated as the provider being unavailable.
    """
    error = exc if isinstance(exc, ProviderError) else ProviderUnavailableError(
        f"{route.adapter_id} failed: {exc}",
        adapter_id=route.adapter_id,
        upstream_model=route.upstream_model,
    )
    if error.retryable:
        return RetryableFailure(route=route, error=error)
    return FatalFailure(route=route, error=error)


def next_action(outcome: AdapterOutcome, remaining: int) -> FallbackAction:
    """Decide what the chain does after one attempt.

    Args:
        outcome: Result of the attempt just made
        remaining: Routes left to try after this one

    Returns:
        FallbackAction for the chain
    """
    if isinstance(outcome, AdapterSuccess):
        return FallbackAction.RETURN
    if isinstance(outcome, FatalFailure):
        return FallbackAction.FAIL
    return FallbackAction.TRY_NEXT if remaining > 0 else FallbackAction.FAIL


class FallbackChain:
    """Runs one operation against each route in order until it succeeds.

    Every failed attempt is recorded as a fallback event for logging and
    inspection in tests. A chain instance serves one request.
    """

    def __init__(self, model_id: str, routes: tuple[ProviderRoute, ...]) -> None:
        if not routes:
            raise UpstreamUnavailableError(f"Model '{model_id}' has no configured provider")
        self._model_id = model_id
        self._routes = routes
        self._fallback_events: list[dict[str, Any]] = []

    async def run(self, attempt: Callable[[ProviderRoute], Awaitable[T]]) -> AdapterSuccess[T]:
        """Execute attempt(route) along the chain.

        Args:
            attempt: Coroutine factory performing one provider call for a route

        Returns:
            AdapterSuccess holding the value and the route that produced it

        Raises:
            UpstreamUnavailableError: Chain exhausted or a fatal failure
        """
        last_error: ProviderError | None = None

        for index, route in enumerate(self._routes):
            remaining = len(self._routes) - index - 1
            log.debug(
                "fallback_chain.attempting_route",
                model_id=self._model_id,
                adapter=route.adapter_id,
                upstream_model=route.upstream_model,
            )
            try:
                outcome: AdapterOutcome = AdapterSuccess(route=route, value=await attempt(route))
            except Exception as exc:
                outcome = classify_failure(route, exc)

            action = next_action(outcome, remaining)
            if isinstance(outcome, AdapterSuccess):
                if index > 0:
                    log.info(
                        "fallback_chain.route_succeeded",
                        model_id=self._model_id,
                        adapter=route.adapter_id,
                        fallback_occurred=True,
                    )
                return outcome

            last_error = outcome.error
            self._fallback_events.append(
                {
                    "adapter": route.adapter_id,
                    "upstream_model": route.upstream_model,
                    "error_type": type(outcome.error).__name__,
                    "error_message": str(outcome.error),
                    "action": action.value,
                }
            )
            log.warning(
                "fallback_chain.route_failed",
                model_id=self._model_id,
                adapter=route.adapter_id,
                error_type=type(outcome.error).__name__,
                error_message=str(outcome.error),
                remaining_routes=remaining,
                action=action.value,
            )
            if action is FallbackAction.FAIL:
                break

        log.error(
            "fallback_chain.exhausted",
            model_id=self._model_id,
            attempted=[event["adapter"] for event in self._fallback_events],
        )
        raise UpstreamUnavailableError(
            f"All providers failed for model '{self._model_id}'. Last error: {last_error}"
        )

    def get_fallback_events(self) -> list[dict[str, Any]]:
        return self._fallback_events.copy()
