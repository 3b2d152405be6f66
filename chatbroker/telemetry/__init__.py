"""Telemetry package: structured logging with request correlation."""

from __future__ import annotations

from chatbroker.telemetry.logging import (
    RequestIdMiddleware,
    bind_conversation_context,
    bind_user_context,
    clear_context,
    configure_logging,
)

__all__ = [
    "RequestIdMiddleware",
    "bind_conversation_context",
    "bind_user_context",
    "clear_context",
    "configure_logging",
]
