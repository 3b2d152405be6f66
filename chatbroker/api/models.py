"""Model catalog and token balance endpoints.

GET /api/v1/models  - Logical models with base cost and availability (public)
GET /api/v1/tokens  - Caller's per-model balances and unlimited entitlement
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from chatbroker.agent.model_router.router import ModelRouter
from chatbroker.api.deps import get_model_router, get_store
from chatbroker.auth.dependencies import get_current_user
from chatbroker.models.user import User
from chatbroker.services.store import ChatStore

router = APIRouter(tags=["models"])


@router.get("/models", summary="List logical models")
async def list_models(model_router: ModelRouter = Depends(get_model_router)) -> dict[str, Any]:
    return {
        "models": [model.to_dict() for model in model_router.list_models()],
        "default": model_router.default_model_id,
    }


@router.get("/tokens", summary="Caller's token balances")
async def token_balances(
    current_user: User = Depends(get_current_user),
    store: ChatStore = Depends(get_store),
    model_router: ModelRouter = Depends(get_model_router),
) -> dict[str, Any]:
    stored = await store.list_balances(current_user.id)
    return {
        "balances": {model.id: stored.get(model.id, 0) for model in model_router.list_models()},
        "unlimited": current_user.has_active_entitlement(),
        "paidUntil": current_user.paid_until.isoformat() if current_user.paid_until else None,
    }
