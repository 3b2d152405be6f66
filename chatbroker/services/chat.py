"""Chat orchestrator - one chat turn from request to settled, persisted reply.

Pipeline:
1. Validate - non-empty message within length limit, known logical model
2. Budget gate - base-cost pre-check (entitled users skip it)
3. Conversation - load or lazily create
4. Memory - classify; explicit requests short-circuit with an acknowledgement,
   implicit facts are stored and the reply is prefixed "(Noted) "
5. Prompt - system prompt + memory hints + history + user message
6. Route - open the upstream stream (fallback happens here, before any
   byte is sent, so failures still become an ordinary error response)
7. Relay - filtered SSE events with heartbeats
8. Finalize - persist both messages and settle tokens, even when the client
   disconnected mid-stream

Nothing here keeps state beyond a single turn.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

from chatbroker.agent.reasoning_filter import ReasoningFilter, strip_reasoning
from chatbroker.core.errors import InsufficientBudgetError, InvalidInputError
from chatbroker.infra.streaming import CancellationToken, RelayEvent, RelayOutcome, StreamRelay
from chatbroker.models.conversation import MessageRole
from chatbroker.services.memory import build_hint_message, extract_fact
from chatbroker.telemetry import bind_conversation_context

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Awaitable, Callable

    from chatbroker.agent.model_router.budget import TokenMeter
    from chatbroker.agent.model_router.catalog import LogicalModel
    from chatbroker.agent.model_router.router import ModelRouter
    from chatbroker.config import Settings
    from chatbroker.models.conversation import Conversation
    from chatbroker.models.user import User
    from chatbroker.services.memory import MemoryEngine
    from chatbroker.services.store import ChatStore

log = structlog.get_logger(__name__)

NOTED_PREFIX = "(Noted) "
MAX_CLIENT_HINTS = 8
TITLE_LENGTH = 30

EMPTY_SUMMARY = "This conversation has no messages to summarize."
SUMMARY_PROMPT = "Please summarize the following conversation:\n\n{transcript}\n\nSummary:"


@dataclass
class ChatRequest:
    """One chat turn as received from the client."""

    user: User
    message: str
    model_id: str
    conversation_id: uuid.UUID | None = None
    file_context: str | None = None
    memory_hints: list[str] | None = None


@dataclass(frozen=True)
class Acknowledgement:
    """Reply to an explicit "remember" request; no model was called."""

    conversation_id: uuid.UUID
    user_text: str
    bot_text: str
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "conversationId": str(self.conversation_id),
            "message": {
                "user": self.user_text,
                "bot": self.bot_text,
                "timestamp": self.timestamp.isoformat(),
            },
        }


def title_from_message(message: str) -> str:
    return message[:TITLE_LENGTH] + "..."


def compose_user_content(message: str, file_context: str | None) -> str:
    """User prompt content with attached file text appended."""
    if not file_context:
        return message
    return f"{message}\n\n[Attached file content]\n{file_context}"


@dataclass
class StreamingTurn:
    """A turn whose upstream stream is open and ready to relay.

    The API layer iterates events() inside the response body and must call
    finalize() exactly once afterwards, however the stream ended.
    """

    orchestrator: ChatOrchestrator
    request: ChatRequest
    model: LogicalModel
    conversation: Conversation
    created: bool
    user_content: str
    relay: StreamRelay
    _finalized: bool = field(default=False, init=False)

    def events(self) -> AsyncGenerator[RelayEvent, None]:
        return self.relay.events()

    async def finalize(self) -> None:
        if self._finalized:
            return
        self._finalized = True
        await self.orchestrator.finalize_turn(self)


class ChatOrchestrator:
    """Runs chat turns against injected collaborators."""

    def __init__(
        self,
        *,
        settings: Settings,
        store: ChatStore,
        router: ModelRouter,
        meter: TokenMeter,
        memory: MemoryEngine,
    ) -> None:
        self._settings = settings
        self._store = store
        self._router = router
        self._meter = meter
        self._memory = memory

    async def prepare_turn(
        self,
        request: ChatRequest,
        *,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    ) -> Acknowledgement | StreamingTurn:
        """Run everything up to the first upstream delta.

        Args:
            request: The chat turn
            is_disconnected: Async callable the relay polls for client disconnect

        Returns:
            Acknowledgement for explicit remember requests, otherwise a
            StreamingTurn whose relay is ready to iterate

        Raises:
            InvalidInputError: Empty/oversized message or unknown model (400)
            InsufficientBudgetError: Balance below the model's base cost (403)
            NotFoundError: conversation_id not owned by the user (404)
            UpstreamUnavailableError: Every provider route failed (502)
        """
        message = (request.message or "").strip()
        if not message:
            raise InvalidInputError("Message is required")
        if len(message) > self._settings.max_message_chars:
            raise InvalidInputError(
                f"Message exceeds limit of {self._settings.max_message_chars} characters"
            )
        model = self._router.get_model(request.model_id)

        decision = await self._meter.check_budget(request.user, model)
        if not decision.allowed:
            raise InsufficientBudgetError(
                decision.reason or "Insufficient tokens",
                details={"model": model.id, "balance": decision.balance, "baseCost": model.base_cost},
            )

        conversation, created = await self._store.get_or_create_conversation(
            request.user.id, request.conversation_id
        )
        bind_conversation_context(conversation.id)
        history = conversation.history()

        noted = False
        try:
            memory_decision = await self._memory.classify(message)
        except Exception as exc:
            log.warning("chat.memory_classify_failed", error=str(exc))
            memory_decision = None

        if memory_decision is not None and memory_decision.is_explicit:
            return await self._acknowledge(request, conversation, message)

        if memory_decision is not None and memory_decision.should_remember:
            try:
                await self._memory.remember(request.user.id, message)
                noted = True
            except Exception as exc:
                log.warning("chat.memory_store_failed", error=str(exc))

        if request.memory_hints:
            hints = [h for h in request.memory_hints if isinstance(h, str)][:MAX_CLIENT_HINTS]
        else:
            hints = await self._memory.retrieve_hints(request.user.id)

        user_content = compose_user_content(message, request.file_context)
        prompt = self.build_prompt(history, user_content, hints)

        cancel_token = CancellationToken()
        stream = await self._router.resolve_stream(model.id, prompt, cancel_token)

        leading: list[RelayEvent] = []
        if created:
            leading.append(RelayEvent.start(str(conversation.id)))
        if noted:
            leading.append(RelayEvent.content(NOTED_PREFIX))

        relay = StreamRelay(
            stream,
            reasoning_filter=ReasoningFilter(),
            leading=leading,
            heartbeat_interval=self._settings.heartbeat_interval_seconds,
            buffer_size=self._settings.relay_buffer_size,
            cancel_token=cancel_token,
            is_disconnected=is_disconnected,
        )
        log.info(
            "chat.turn_started",
            model_id=model.id,
            adapter=stream.route.adapter_id,
            new_conversation=created,
            history_messages=len(history),
            hints=len(hints),
            noted=noted,
        )
        return StreamingTurn(
            orchestrator=self,
            request=request,
            model=model,
            conversation=conversation,
            created=created,
            user_content=user_content,
            relay=relay,
        )

    def build_prompt(
        self,
        history: list[dict[str, str]],
        user_content: str,
        hints: list[str],
    ) -> list[dict[str, str]]:
        """System prompt, memory block, prior turns, then the new user message."""
        messages: list[dict[str, str]] = [{"role": "system", "content": self._settings.system_prompt}]
        hint_message = build_hint_message(hints)
        if hint_message is not None:
            messages.append(hint_message)
        messages.extend(history)
        messages.append({"role": "user", "content": user_content})
        return messages

    async def finalize_turn(self, turn: StreamingTurn) -> None:
        """Persist the exchange and settle tokens for what the client received.

        An errored stream that delivered nothing is neither stored nor charged.
        """
        relay = turn.relay
        bot_text = relay.text
        if relay.outcome is RelayOutcome.ERRORED and not bot_text:
            log.info("chat.turn_failed", error=relay.error)
            return

        await self._persist_exchange(
            turn.request,
            turn.conversation,
            turn.request.message.strip(),
            bot_text,
            model_used=turn.model.id,
        )
        await self._meter.settle(
            turn.request.user,
            turn.model,
            turn.user_content,
            bot_text,
            conversation_id=turn.conversation.id,
        )
        log.info("chat.turn_finished", outcome=relay.outcome.value, reply_chars=len(bot_text))

    async def summarize(self, user: User, conversation_id: uuid.UUID) -> str:
        """One-shot summary of a stored conversation. Not metered.

        Raises:
            NotFoundError: Conversation not owned by the user (404)
            UpstreamUnavailableError: Every provider route failed (502)
        """
        conversation = await self._store.get_conversation(user.id, conversation_id)
        bind_conversation_context(conversation.id)
        if not conversation.messages:
            return EMPTY_SUMMARY

        transcript = "\n".join(
            f"{'User' if m.role == MessageRole.USER else 'Assistant'}: {m.content}"
            for m in sorted(conversation.messages, key=lambda m: m.sequence_number)
        )
        prompt = [{"role": "user", "content": SUMMARY_PROMPT.format(transcript=transcript)}]
        answer = await self._router.resolve_completion(
            self._settings.summary_model,
            prompt,
            max_tokens=self._settings.summary_max_tokens,
        )
        log.info(
            "chat.conversation_summarized",
            model_id=self._settings.summary_model,
            messages=len(conversation.messages),
        )
        return strip_reasoning(answer).strip()

    async def _acknowledge(
        self,
        request: ChatRequest,
        conversation: Conversation,
        message: str,
    ) -> Acknowledgement:
        fact = extract_fact(message)
        if fact:
            try:
                await self._memory.remember(request.user.id, fact)
            except Exception as exc:
                log.warning("chat.memory_store_failed", error=str(exc))
        bot_text = f'OK, I\'ll remember that: "{fact}"'

        await self._persist_exchange(request, conversation, message, bot_text, model_used=None)
        log.info("chat.memory_acknowledged", fact_chars=len(fact))
        return Acknowledgement(
            conversation_id=conversation.id,
            user_text=message,
            bot_text=bot_text,
            timestamp=datetime.now(UTC),
        )

    async def _persist_exchange(
        self,
        request: ChatRequest,
        conversation: Conversation,
        user_text: str,
        bot_text: str,
        *,
        model_used: str | None,
    ) -> None:
        """Append the user/assistant pair and retitle a fresh conversation.

        Failures are logged and absorbed; the reply was already delivered.
        """
        try:
            await self._store.append_exchange(
                conversation.id,
                user_text,
                bot_text,
                model_used=model_used,
                file_context=request.file_context,
                title=title_from_message(user_text),
            )
        except Exception as exc:
            log.error(
                "chat.persist_failed",
                conversation_id=str(conversation.id),
                error_type=type(exc).__name__,
                error=str(exc),
            )
