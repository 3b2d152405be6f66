"""Domain error taxonomy for the chat pipeline.

Every error a chat turn can surface to the client derives from
ChatBrokerError and carries the HTTP status it maps to. The API layer
renders these uniformly as {"error": ..., "status": ...}; once a stream
has started the same errors are delivered as an in-stream error event.
"""

from __future__ import annotations

from typing import Any


class ChatBrokerError(Exception):
    """Base class for client-visible chat errors."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.message, "status": self.status_code}
        if self.details:
            body["details"] = self.details
        return body


class InvalidInputError(ChatBrokerError):
    """Bad model id, empty message, malformed request fields."""

    status_code = 400
    code = "invalid_input"


class InsufficientBudgetError(ChatBrokerError):
    """Balance below the model's base cost and no active entitlement."""

    status_code = 403
    code = "insufficient_tokens"


class NotFoundError(ChatBrokerError):
    status_code = 404
    code = "not_found"


class UpstreamUnavailableError(ChatBrokerError):
    """Every route in the fallback chain failed, or the stream broke after output began."""

    status_code = 502
    code = "upstream_unavailable"


class FilterFaultError(UpstreamUnavailableError):
    """The reasoning filter raised while scrubbing a delta.

    Surfaced to clients exactly like an exhausted fallback chain.
    """

    code = "filter_fault"
