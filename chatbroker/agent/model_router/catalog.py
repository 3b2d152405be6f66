"""Logical model catalog and provider mapping.

Clients only ever name a logical model (nano / mini / flagship). Each
logical model owns an ordered tuple of ProviderRoutes: the primary
upstream first, then fallbacks. Routes exist only for providers whose
credentials are configured, so the catalog is built once at startup from
Settings and never changes afterwards.

Default mapping:
- nano:     together  (Mixtral)      -> openai fallback
- mini:     openai    (gpt-4o-mini)
- flagship: nebius    (Qwen3, one-shot, no streaming) -> openai fallback
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

from chatbroker.agent.llm import LiteLLMAdapter, ProviderAdapter

if TYPE_CHECKING:
    from chatbroker.config import Settings

log = structlog.get_logger(__name__)

DEFAULT_MODEL_ID = "nano"


@dataclass(frozen=True)
class ProviderRoute:
    """One attempt in a fallback chain.

    Attributes:
        adapter_id: Key of the ProviderAdapter that serves this route
        upstream_model: Model name sent to that provider
    """

    adapter_id: str
    upstream_model: str


@dataclass(frozen=True)
class LogicalModel:
    """A client-facing model with its per-message cost floor.

    Attributes:
        id: Logical id used in requests and balances
        name: Display name
        description: One-line description for model pickers
        base_cost: Minimum tokens debited per message and required to start one
        routes: Ordered provider routes, primary first
    """

    id: str
    name: str
    description: str
    base_cost: int
    routes: tuple[ProviderRoute, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if self.base_cost < 1:
            raise ValueError("base_cost must be positive")

    @property
    def available(self) -> bool:
        return bool(self.routes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "baseTokenCost": self.base_cost,
            "available": self.available,
        }


def build_adapters(settings: Settings) -> dict[str, ProviderAdapter]:
    """Create one adapter per provider that has an API key configured."""
    timeouts = {
        "stream_timeout": settings.stream_timeout_seconds,
        "completion_timeout": settings.completion_timeout_seconds,
    }
    adapters: dict[str, ProviderAdapter] = {}

    together_key = settings.together_api_key.get_secret_value()
    if together_key:
        adapters["together"] = LiteLLMAdapter("together", api_key=together_key, **timeouts)

    openai_key = settings.openai_api_key.get_secret_value()
    if openai_key:
        adapters["openai"] = LiteLLMAdapter("openai", api_key=openai_key, **timeouts)

    nebius_key = settings.nebius_api_key.get_secret_value()
    if nebius_key:
        adapters["nebius"] = LiteLLMAdapter(
            "nebius",
            api_key=nebius_key,
            api_base=settings.nebius_base_url,
            supports_streaming=False,
            **timeouts,
        )

    log.info("model_catalog.adapters_configured", adapters=sorted(adapters))
    return adapters


def build_catalog(settings: Settings, adapter_ids: set[str] | frozenset[str]) -> dict[str, LogicalModel]:
    """Build the logical model catalog.

    Args:
        settings: Application settings (upstream names, base costs)
        adapter_ids: Adapters actually configured; routes to any other
            provider are left out, which may leave a model unavailable

    Returns:
        Mapping of logical model id to LogicalModel
    """
    candidates: dict[str, tuple[str, str, int, list[ProviderRoute]]] = {
        "flagship": (
            "Flagship",
            "Smartest model for complex tasks",
            settings.flagship_base_cost,
            [
                ProviderRoute("nebius", settings.flagship_upstream_model),
                ProviderRoute("openai", settings.fallback_upstream_model),
            ],
        ),
        "mini": (
            "Mini",
            "Affordable model balancing speed and intelligence",
            settings.mini_base_cost,
            [
                ProviderRoute("openai", settings.mini_upstream_model),
            ],
        ),
        "nano": (
            "Nano",
            "Fastest for low-latency tasks",
            settings.nano_base_cost,
            [
                ProviderRoute("together", settings.nano_upstream_model),
                ProviderRoute("openai", settings.fallback_upstream_model),
            ],
        ),
    }

    catalog: dict[str, LogicalModel] = {}
    for model_id, (name, description, base_cost, routes) in candidates.items():
        usable: list[ProviderRoute] = []
        for route in routes:
            if route.adapter_id in adapter_ids and route not in usable:
                usable.append(route)
        catalog[model_id] = LogicalModel(
            id=model_id,
            name=name,
            description=description,
            base_cost=base_cost,
            routes=tuple(usable),
        )

    log.info(
        "model_catalog.built",
        models={m.id: [r.adapter_id for r in m.routes] for m in catalog.values()},
    )
    return catalog
