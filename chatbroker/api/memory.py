"""User memory API endpoints.

GET    /api/v1/memory              - Non-expired memories, newest first
POST   /api/v1/memory              - Store a memory
PUT    /api/v1/memory/{memory_id}  - Replace a memory's text
DELETE /api/v1/memory/{memory_id}  - Forget a memory

All endpoints are scoped to the authenticated user.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, ConfigDict, Field

from chatbroker.api.deps import get_memory_engine
from chatbroker.auth.dependencies import get_current_user
from chatbroker.core.errors import NotFoundError
from chatbroker.models.memory import MemoryCategory
from chatbroker.models.user import User
from chatbroker.services.memory import MemoryEngine

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/memory", tags=["memory"])


class StoreMemoryRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    text: str = Field(..., min_length=1, max_length=1000, description="Fact to remember")
    category: MemoryCategory | None = Field(
        default=None,
        description="Derived from the text when omitted",
    )
    expires_at: datetime | None = Field(
        default=None,
        alias="expiresAt",
        description="Derived from the category when omitted (ISO 8601)",
    )


@router.get("", summary="List the caller's memories")
async def list_memories(
    current_user: User = Depends(get_current_user),
    memory: MemoryEngine = Depends(get_memory_engine),
) -> dict[str, Any]:
    return {"memories": await memory.list_memories(current_user.id)}


@router.post("", status_code=status.HTTP_201_CREATED, summary="Store a memory")
async def store_memory(
    body: StoreMemoryRequest,
    current_user: User = Depends(get_current_user),
    memory: MemoryEngine = Depends(get_memory_engine),
) -> dict[str, Any]:
    item = await memory.remember(
        current_user.id,
        body.text.strip(),
        category=body.category,
        expires_at=body.expires_at,
    )
    return item.to_dict()


@router.put("/{memory_id}", summary="Replace a memory's text")
async def update_memory(
    memory_id: uuid.UUID,
    body: StoreMemoryRequest,
    current_user: User = Depends(get_current_user),
    memory: MemoryEngine = Depends(get_memory_engine),
) -> dict[str, Any]:
    item = await memory.revise(
        current_user.id,
        memory_id,
        body.text.strip(),
        category=body.category,
        expires_at=body.expires_at,
    )
    if item is None:
        raise NotFoundError("Memory not found")
    return item.to_dict()


@router.delete("/{memory_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Forget a memory")
async def delete_memory(
    memory_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    memory: MemoryEngine = Depends(get_memory_engine),
) -> Response:
    if not await memory.forget(current_user.id, memory_id):
        raise NotFoundError("Memory not found")
    log.info("memory.deleted", memory_id=str(memory_id))
    return Response(status_code=status.HTTP_204_NO_CONTENT)
