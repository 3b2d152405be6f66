"""Main API router - aggregates all sub-routers.

All routes are versioned under /api/v1 except the health check.
"""

from __future__ import annotations

from fastapi import APIRouter

from chatbroker.api import chat, conversations, health, memory, models

# Public router (no auth required)
public_router = APIRouter()
public_router.include_router(health.router)

# Versioned API router
api_v1_router = APIRouter(prefix="/api/v1")
api_v1_router.include_router(chat.router)
api_v1_router.include_router(conversations.router)
api_v1_router.include_router(memory.router)
api_v1_router.include_router(models.router)
