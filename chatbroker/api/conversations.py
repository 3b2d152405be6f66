"""Conversation API endpoints.

GET    /api/v1/conversations                    - Caller's conversations, most recent first
GET    /api/v1/conversations/{id}               - One conversation with its messages
DELETE /api/v1/conversations/{id}               - Delete a conversation and its messages
POST   /api/v1/conversations/{id}/summarize     - One-shot summary of a conversation

New conversations are created by POST /api/v1/chat.
"""

from __future__ import annotations

import uuid
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Response, status

from chatbroker.api.deps import get_orchestrator, get_store
from chatbroker.auth.dependencies import get_current_user
from chatbroker.core.errors import NotFoundError
from chatbroker.models.user import User
from chatbroker.services.chat import ChatOrchestrator
from chatbroker.services.store import ChatStore

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/conversations", tags=["conversations"])


@router.get("", summary="List the caller's conversations")
async def list_conversations(
    current_user: User = Depends(get_current_user),
    store: ChatStore = Depends(get_store),
) -> dict[str, Any]:
    conversations = await store.list_conversations(current_user.id)
    return {"conversations": [c.to_dict() for c in conversations]}


@router.get("/{conversation_id}", summary="Get a conversation with its messages")
async def get_conversation(
    conversation_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    store: ChatStore = Depends(get_store),
) -> dict[str, Any]:
    conversation = await store.get_conversation(current_user.id, conversation_id)
    return conversation.to_dict(include_messages=True)


@router.delete(
    "/{conversation_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a conversation",
)
async def delete_conversation(
    conversation_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    store: ChatStore = Depends(get_store),
) -> Response:
    if not await store.delete_conversation(current_user.id, conversation_id):
        raise NotFoundError("Conversation not found")
    log.info("conversation.deleted", conversation_id=str(conversation_id))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{conversation_id}/summarize", summary="Summarize a conversation")
async def summarize_conversation(
    conversation_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> dict[str, str]:
    return {"summary": await orchestrator.summarize(current_user, conversation_id)}
