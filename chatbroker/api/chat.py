"""Chat API endpoint.

POST /api/v1/chat?model=<id>
    Body (JSON or form fields):
        message         - user message (required)
        conversationId  - existing conversation (optional; created when absent)
        fileContext     - text already extracted from an attached file (optional)
        memoryHints     - up to 8 client-held memory strings (optional; JSON
                          array, or a JSON-encoded string in form posts)

    Responses:
        200 text/event-stream - relayed reply (see chatbroker.infra.streaming)
        200 application/json  - acknowledgement of an explicit "remember"
        400 / 401 / 403 / 404 / 502 - {"error": ..., "status": ...}

The upstream stream is opened before the response starts, so provider
failures up to the first delta are still reported as a 502 JSON error.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from collections.abc import AsyncGenerator
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from chatbroker.agent.model_router.catalog import DEFAULT_MODEL_ID
from chatbroker.api.deps import get_orchestrator
from chatbroker.auth.dependencies import get_current_user
from chatbroker.core.errors import InvalidInputError
from chatbroker.infra.streaming import SSE_HEADERS
from chatbroker.models.user import User
from chatbroker.services.chat import Acknowledgement, ChatOrchestrator, ChatRequest, StreamingTurn

log = structlog.get_logger(__name__)

router = APIRouter(tags=["chat"])


class ChatBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    message: str = ""
    conversation_id: uuid.UUID | None = Field(default=None, alias="conversationId")
    file_context: str | None = Field(default=None, alias="fileContext")
    memory_hints: list[str] | None = Field(default=None, alias="memoryHints")


async def _read_body(request: Request) -> ChatBody:
    content_type = request.headers.get("content-type", "")
    payload: Any
    if content_type.startswith("application/json"):
        try:
            payload = await request.json()
        except ValueError as exc:
            raise InvalidInputError("Request body is not valid JSON") from exc
    else:
        form = await request.form()
        payload = {key: value for key, value in form.items() if isinstance(value, str)}
        hints = payload.get("memoryHints")
        if hints:
            try:
                payload["memoryHints"] = json.loads(hints)
            except ValueError as exc:
                raise InvalidInputError("memoryHints must be a JSON array of strings") from exc

    if not isinstance(payload, dict):
        raise InvalidInputError("Request body must be an object")
    for key in ("conversationId", "fileContext"):
        if payload.get(key) == "":
            payload[key] = None

    try:
        return ChatBody.model_validate(payload)
    except ValidationError as exc:
        fields = sorted({str(err["loc"][0]) for err in exc.errors() if err.get("loc")})
        raise InvalidInputError(f"Invalid request fields: {', '.join(fields)}") from exc


async def _sse_body(turn: StreamingTurn) -> AsyncGenerator[str, None]:
    try:
        async for event in turn.events():
            yield event.to_sse()
    finally:
        # Runs on completion, error and disconnect alike
        await asyncio.shield(turn.finalize())


@router.post("/chat", summary="Send a chat message and stream the reply")
async def chat(
    request: Request,
    model: str = Query(default=DEFAULT_MODEL_ID, max_length=100),
    current_user: User = Depends(get_current_user),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> Any:
    body = await _read_body(request)
    turn = await orchestrator.prepare_turn(
        ChatRequest(
            user=current_user,
            message=body.message,
            model_id=model,
            conversation_id=body.conversation_id,
            file_context=body.file_context,
            memory_hints=body.memory_hints,
        ),
        is_disconnected=request.is_disconnected,
    )

    if isinstance(turn, Acknowledgement):
        return JSONResponse(turn.to_dict())

    return StreamingResponse(
        _sse_body(turn),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
