"""
Stream relay: provider deltas -> client-visible Server-Sent Events.

The relay runs two concurrent parties over one serialized write path:

- a producer task pulling deltas from the routed upstream stream, scrubbing
  them through the ReasoningFilter and queueing content events on a
  bounded asyncio.Queue (a slow client therefore slows the upstream read)
- the consumer (the SSE response body) draining that queue, which emits a
  liveness ping whenever nothing was sent for heartbeat_interval seconds

Wire format:
    data: {"conversationId": "..."}        start, only for new conversations
    data: {"chunk": "..."}                 content
    event: ping\\ndata: <epoch ms>          liveness
    event: error\\ndata: {"error": "..."}   error, always followed by [DONE]
    data: [DONE]                           terminal sentinel

On client disconnect the relay stops pulling promptly: the cancellation
token fires, the producer is cancelled and nothing more is written.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import time
from collections.abc import AsyncGenerator, AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import structlog

from chatbroker.agent.reasoning_filter import ReasoningFilter
from chatbroker.core.errors import ChatBrokerError, FilterFaultError

log = structlog.get_logger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class RelayEventType(StrEnum):
    START = "start"
    CONTENT = "content"
    PING = "ping"
    ERROR = "error"
    DONE = "done"


class RelayOutcome(StrEnum):
    """How a relay ended. Read by settlement after the stream closes."""

    PENDING = "pending"
    COMPLETED = "completed"
    DISCONNECTED = "disconnected"
    ERRORED = "errored"


@dataclass(frozen=True)
class RelayEvent:
    """
    One client-visible event.

    Attributes:
        type: Event type
        data: Conversation id (start), text (content), epoch ms (ping),
            message (error), None (done)
    """

    type: RelayEventType
    data: Any = None

    @classmethod
    def start(cls, conversation_id: str) -> RelayEvent:
        return cls(RelayEventType.START, conversation_id)

    @classmethod
    def content(cls, chunk: str) -> RelayEvent:
        return cls(RelayEventType.CONTENT, chunk)

    @classmethod
    def ping(cls) -> RelayEvent:
        return cls(RelayEventType.PING, int(time.time() * 1000))

    @classmethod
    def error(cls, message: str) -> RelayEvent:
        return cls(RelayEventType.ERROR, message)

    @classmethod
    def done(cls) -> RelayEvent:
        return cls(RelayEventType.DONE)

    def to_sse(self) -> str:
        """Format as an SSE frame."""
        if self.type is RelayEventType.START:
            return f"data: {json.dumps({'conversationId': self.data})}\n\n"
        if self.type is RelayEventType.CONTENT:
            return f"data: {json.dumps({'chunk': self.data})}\n\n"
        if self.type is RelayEventType.PING:
            return f"event: ping\ndata: {self.data}\n\n"
        if self.type is RelayEventType.ERROR:
            return f"event: error\ndata: {json.dumps({'error': self.data})}\n\n"
        return "data: [DONE]\n\n"


class CancellationToken:
    """One-shot flag shared by the transport, the relay and the router stream."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


_END = object()


class StreamRelay:
    """
    Relays one upstream delta stream to one client.

    Example:
        relay = StreamRelay(
            routed_stream,
            leading=[RelayEvent.start(str(conversation.id))],
            is_disconnected=request.is_disconnected,
        )
        async for event in relay.events():
            yield event.to_sse()

        relay.text     # visible reply text actually sent
        relay.outcome  # completed / disconnected / errored
    """

    def __init__(
        self,
        source: AsyncIterator[str],
        *,
        reasoning_filter: ReasoningFilter | None = None,
        leading: list[RelayEvent] | None = None,
        heartbeat_interval: float = 15.0,
        buffer_size: int = 64,
        cancel_token: CancellationToken | None = None,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    ) -> None:
        """
        Initialize the relay.

        Args:
            source: Upstream delta iterator (usually a RoutedStream)
            reasoning_filter: Scrubber for hidden reasoning; a fresh one if None
            leading: Events sent before any upstream content
            heartbeat_interval: Idle seconds before a ping is sent
            buffer_size: Max queued events before the producer waits
            cancel_token: Token fired when the relay stops early
            is_disconnected: Async check for client disconnect
        """
        self._source = source
        self._filter = reasoning_filter or ReasoningFilter()
        self._leading = list(leading or [])
        self._heartbeat_interval = heartbeat_interval
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=buffer_size)
        self._cancel_token = cancel_token or CancellationToken()
        self._is_disconnected = is_disconnected
        self._parts: list[str] = []
        self._outcome = RelayOutcome.PENDING
        self._error: str | None = None
        self._pings = 0

    @property
    def cancel_token(self) -> CancellationToken:
        return self._cancel_token

    @property
    def text(self) -> str:
        """Upstream-derived text delivered to the client so far."""
        return "".join(self._parts)

    @property
    def outcome(self) -> RelayOutcome:
        return self._outcome

    @property
    def error(self) -> str | None:
        return self._error

    async def events(self) -> AsyncGenerator[RelayEvent, None]:
        """Yield events for the client until done, error or disconnect."""
        for event in self._leading:
            yield event

        producer = asyncio.create_task(self._produce())
        try:
            while True:
                try:
                    item = await asyncio.wait_for(self._queue.get(), timeout=self._heartbeat_interval)
                except TimeoutError:
                    if await self._client_gone():
                        break
                    self._pings += 1
                    yield RelayEvent.ping()
                    continue

                if item is _END:
                    if self._outcome is RelayOutcome.PENDING:
                        self._outcome = RelayOutcome.COMPLETED
                    yield RelayEvent.done()
                    break

                if item.type is RelayEventType.ERROR:
                    self._outcome = RelayOutcome.ERRORED
                    self._error = item.data
                    yield item
                    yield RelayEvent.done()
                    break

                if await self._client_gone():
                    break
                self._parts.append(item.data)
                yield item
        finally:
            if self._outcome is RelayOutcome.PENDING:
                self._outcome = RelayOutcome.DISCONNECTED
            self._cancel_token.cancel()
            await self._stop(producer)
            log.info(
                "relay.closed",
                outcome=self._outcome.value,
                chars=sum(len(part) for part in self._parts),
                pings=self._pings,
            )

    async def _produce(self) -> None:
        try:
            async for delta in self._source:
                if self._cancel_token.cancelled:
                    return
                try:
                    visible = self._filter.feed(delta)
                except Exception as exc:
                    raise FilterFaultError("Failed to process model output") from exc
                if visible:
                    await self._queue.put(RelayEvent.content(visible))

            try:
                tail = self._filter.flush()
            except Exception as exc:
                raise FilterFaultError("Failed to process model output") from exc
            if tail:
                await self._queue.put(RelayEvent.content(tail))
        except ChatBrokerError as exc:
            log.warning("relay.upstream_error", error_type=type(exc).__name__, error=exc.message)
            await self._queue.put(RelayEvent.error(exc.message))
        except Exception as exc:
            log.error("relay.producer_failed", error_type=type(exc).__name__, error=str(exc))
            await self._queue.put(RelayEvent.error("Upstream provider failed"))
        await self._queue.put(_END)

    async def _client_gone(self) -> bool:
        if self._cancel_token.cancelled:
            return True
        if self._is_disconnected is None:
            return False
        if await self._is_disconnected():
            log.info("relay.client_disconnected")
            self._outcome = RelayOutcome.DISCONNECTED
            self._cancel_token.cancel()
            return True
        return False

    async def _stop(self, producer: asyncio.Task[None]) -> None:
        if not producer.done():
            producer.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await producer
        aclose = getattr(self._source, "aclose", None)
        if aclose is not None:
            with contextlib.suppress(Exception):
                await aclose()
