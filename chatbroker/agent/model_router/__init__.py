"""Model routing: logical model catalog, provider fallback and token metering."""

from chatbroker.agent.model_router.budget import BudgetDecision, Settlement, TokenMeter, estimate_tokens
from chatbroker.agent.model_router.catalog import (
    DEFAULT_MODEL_ID,
    LogicalModel,
    ProviderRoute,
    build_adapters,
    build_catalog,
)
from chatbroker.agent.model_router.fallback import (
    AdapterSuccess,
    FallbackAction,
    FallbackChain,
    FatalFailure,
    RetryableFailure,
    next_action,
)
from chatbroker.agent.model_router.router import ModelRouter, RoutedStream

__all__ = [
    "DEFAULT_MODEL_ID",
    "AdapterSuccess",
    "BudgetDecision",
    "FallbackAction",
    "FallbackChain",
    "FatalFailure",
    "LogicalModel",
    "ModelRouter",
    "ProviderRoute",
    "RetryableFailure",
    "RoutedStream",
    "Settlement",
    "TokenMeter",
    "build_adapters",
    "build_catalog",
    "estimate_tokens",
    "next_action",
]
