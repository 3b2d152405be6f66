"""Structured logging for the chat broker.

structlog renders JSON in production and a colored console in development.
Request-scoped identifiers travel through structlog contextvars, so every
line logged while a chat turn is served carries them:

    request_id        set by RequestIdMiddleware (inbound x-request-id is kept)
    user_id           bound once the bearer token resolves to a user
    conversation_id   bound once the turn's conversation is known

Provider credentials must never reach a log sink; the redaction processor
masks any event key that looks like one.

Log line (production):
    {
        "timestamp": "2026-02-17T10:30:45.123456Z",
        "level": "info",
        "logger": "chatbroker.agent.model_router.budget",
        "event": "token_meter.settled",
        "request_id": "req_5f0c2a...",
        "user_id": "8d1e...",
        "conversation_id": "c41b...",
        "model_id": "nano",
        "debited": 37
    }
"""

from __future__ import annotations

import logging
import re
import sys
import uuid
from collections.abc import MutableMapping
from typing import Any

import structlog
from structlog.types import Processor

REQUEST_ID_HEADER = b"x-request-id"

_SECRET_KEYS = frozenset({"api_key", "authorization", "jwt_secret", "password", "secret"})
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9_.\-]{1,64}$")

# Third-party loggers that are noisy at INFO while streaming
_QUIET_LOGGERS = ("LiteLLM", "LiteLLM Router", "httpx", "httpcore")


def _redact_secrets(
    _logger: Any, _method: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    for key in event_dict:
        lowered = key.lower()
        if lowered in _SECRET_KEYS or lowered.endswith("_api_key"):
            event_dict[key] = "***"
    return event_dict


def configure_logging(*, json_logs: bool = False, log_level: str = "INFO") -> None:
    """Install the structlog pipeline and route stdlib logging through stdout.

    Args:
        json_logs: JSON lines (production) instead of the console renderer
        log_level: Minimum level name, e.g. "DEBUG"
    """
    level = logging.getLevelName(log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level, force=True)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _redact_secrets,
    ]
    if json_logs:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ------------------------------------------------------------------ #
# Request correlation
# ------------------------------------------------------------------ #


def _inbound_request_id(scope: dict[str, Any]) -> str | None:
    for name, value in scope.get("headers", []):
        if name.lower() == REQUEST_ID_HEADER:
            candidate = value.decode("latin-1").strip()
            return candidate if _REQUEST_ID_RE.match(candidate) else None
    return None


class RequestIdMiddleware:
    """Raw ASGI middleware binding a request id for the whole request.

    Streamed responses pass through untouched; the id is added to the
    response start message only. A well-formed inbound x-request-id (for
    example from a proxy) is reused instead of generating a new one.
    """

    def __init__(self, app: Any) -> None:
        self.app = app

    async def __call__(self, scope: dict[str, Any], receive: Any, send: Any) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = _inbound_request_id(scope) or f"req_{uuid.uuid4().hex[:16]}"
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=scope.get("method"),
            path=scope.get("path"),
        )

        async def send_with_id(message: dict[str, Any]) -> None:
            if message["type"] == "http.response.start":
                message["headers"] = [
                    *message.get("headers", []),
                    (REQUEST_ID_HEADER, request_id.encode()),
                ]
            await send(message)

        await self.app(scope, receive, send_with_id)


def bind_user_context(user_id: str | uuid.UUID) -> None:
    structlog.contextvars.bind_contextvars(user_id=str(user_id))


def bind_conversation_context(conversation_id: str | uuid.UUID) -> None:
    structlog.contextvars.bind_contextvars(conversation_id=str(conversation_id))


def clear_context() -> None:
    """Drop every bound identifier (tests, background tasks)."""
    structlog.contextvars.clear_contextvars()
