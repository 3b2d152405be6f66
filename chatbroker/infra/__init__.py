"""Transport-side infrastructure for the chat pipeline."""

from chatbroker.infra.streaming import (
    SSE_HEADERS,
    CancellationToken,
    RelayEvent,
    RelayEventType,
    RelayOutcome,
    StreamRelay,
)

__all__ = [
    "SSE_HEADERS",
    "CancellationToken",
    "RelayEvent",
    "RelayEventType",
    "RelayOutcome",
    "StreamRelay",
]
