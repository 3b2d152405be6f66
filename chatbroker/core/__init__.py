"""Cross-cutting primitives shared by the chat pipeline."""

from __future__ import annotations

from chatbroker.core.errors import (
    ChatBrokerError,
    FilterFaultError,
    InsufficientBudgetError,
    InvalidInputError,
    NotFoundError,
    UpstreamUnavailableError,
)

__all__ = [
    "ChatBrokerError",
    "FilterFaultError",
    "InsufficientBudgetError",
    "InvalidInputError",
    "NotFoundError",
    "UpstreamUnavailableError",
]
