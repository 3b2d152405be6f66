"""FastAPI dependencies resolving the chat pipeline's collaborators.

Long-lived collaborators (store, cache, router) are created once in the
application lifespan and kept on app.state. Per-request services (token
meter, memory engine, orchestrator) are assembled from them here, so tests
only need to override the three leaf dependencies.
"""

from __future__ import annotations

from fastapi import Depends, Request

from chatbroker.agent.model_router.budget import TokenMeter
from chatbroker.agent.model_router.router import ModelRouter
from chatbroker.cache.backend import CacheBackend
from chatbroker.config import Settings, get_settings
from chatbroker.services.chat import ChatOrchestrator
from chatbroker.services.memory import MemoryEngine
from chatbroker.services.store import ChatStore


def get_store(request: Request) -> ChatStore:
    return request.app.state.store


def get_cache(request: Request) -> CacheBackend:
    return request.app.state.cache


def get_model_router(request: Request) -> ModelRouter:
    return request.app.state.model_router


def get_token_meter(
    settings: Settings = Depends(get_settings),
    store: ChatStore = Depends(get_store),
) -> TokenMeter:
    return TokenMeter(store, encoding_name=settings.token_encoding)


def get_memory_engine(
    settings: Settings = Depends(get_settings),
    store: ChatStore = Depends(get_store),
    cache: CacheBackend = Depends(get_cache),
    router: ModelRouter = Depends(get_model_router),
) -> MemoryEngine:
    return MemoryEngine(
        store,
        cache,
        router,
        judge_model=settings.memory_judge_model,
        judge_timeout=settings.memory_judge_timeout_seconds,
        hint_limit=settings.memory_hint_limit,
        cache_ttl=settings.memory_cache_ttl_seconds,
    )


def get_orchestrator(
    settings: Settings = Depends(get_settings),
    store: ChatStore = Depends(get_store),
    router: ModelRouter = Depends(get_model_router),
    meter: TokenMeter = Depends(get_token_meter),
    memory: MemoryEngine = Depends(get_memory_engine),
) -> ChatOrchestrator:
    return ChatOrchestrator(settings=settings, store=store, router=router, meter=meter, memory=memory)
