"""Tests for the ChatOrchestrator.

Tests cover:
- Validation and the budget gate (no state change on denial)
- Explicit "remember" short-circuit (no model call, no charge)
- Implicit memory: fact stored and "(Noted) " leads the reply
- Prompt composition: system prompt, memory hints, history, file context
- Finalization: both messages persisted, title derived, tokens settled
- Errored and disconnected streams
"""

from __future__ import annotations

import uuid

import pytest

from chatbroker.agent.model_router.budget import TokenMeter
from chatbroker.core.errors import (
    InsufficientBudgetError,
    InvalidInputError,
    NotFoundError,
    UpstreamUnavailableError,
)
from chatbroker.infra.streaming import RelayEventType, RelayOutcome
from chatbroker.models.conversation import DEFAULT_TITLE, MessageRole
from chatbroker.services.chat import (
    NOTED_PREFIX,
    Acknowledgement,
    ChatOrchestrator,
    ChatRequest,
    StreamingTurn,
    compose_user_content,
    title_from_message,
)
from chatbroker.services.memory import HINT_PREAMBLE, MemoryEngine


@pytest.fixture
def build_orchestrator(fake_settings, store, cache):
    def _build(router) -> ChatOrchestrator:
        return ChatOrchestrator(
            settings=fake_settings,
            store=store,
            router=router,
            meter=TokenMeter(store, encoding_name=""),
            memory=MemoryEngine(store, cache),
        )

    return _build


async def run_turn(turn: StreamingTurn) -> list:
    events = [event async for event in turn.events()]
    await turn.finalize()
    return events


class TestValidation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("message", ["", "   "])
    async def test_empty_message_rejected(self, build_orchestrator, model_router, make_user, message):
        orchestrator = build_orchestrator(model_router)
        with pytest.raises(InvalidInputError, match="Message is required"):
            await orchestrator.prepare_turn(ChatRequest(make_user({"nano": 100}), message, "nano"))

    @pytest.mark.asyncio
    async def test_oversized_message_rejected(self, build_orchestrator, model_router, make_user, fake_settings):
        orchestrator = build_orchestrator(model_router)
        too_long = "x" * (fake_settings.max_message_chars + 1)
        with pytest.raises(InvalidInputError):
            await orchestrator.prepare_turn(ChatRequest(make_user({"nano": 100}), too_long, "nano"))

    @pytest.mark.asyncio
    async def test_unknown_model_rejected(self, build_orchestrator, model_router, make_user):
        orchestrator = build_orchestrator(model_router)
        with pytest.raises(InvalidInputError, match="Invalid model: gpt-99"):
            await orchestrator.prepare_turn(ChatRequest(make_user({"nano": 100}), "hi", "gpt-99"))


class TestBudgetGate:
    @pytest.mark.asyncio
    async def test_zero_balance_denied_without_side_effects(
        self, build_orchestrator, model_router, make_user, store
    ):
        user = make_user({"nano": 0})
        orchestrator = build_orchestrator(model_router)

        with pytest.raises(InsufficientBudgetError) as exc_info:
            await orchestrator.prepare_turn(ChatRequest(user, "hello", "nano"))

        assert exc_info.value.status_code == 403
        assert exc_info.value.details == {"model": "nano", "balance": 0, "baseCost": 20}
        assert "You have 0 Nano tokens" in exc_info.value.message
        assert store.messages == []
        assert store.usage_records == []
        assert store.conversations == {}

    @pytest.mark.asyncio
    async def test_entitled_user_bypasses_gate_and_is_not_charged(
        self, build_orchestrator, model_router, make_user, store
    ):
        user = make_user(paid_days=30)
        turn = await build_orchestrator(model_router).prepare_turn(ChatRequest(user, "hello", "nano"))
        await run_turn(turn)

        assert store.usage_records == []
        assert await store.get_balance(user.id, "nano") == 0


class TestExplicitRemember:
    @pytest.mark.asyncio
    async def test_short_circuits_without_model_call(
        self, build_orchestrator, make_router, make_adapter, make_user, store
    ):
        adapter = make_adapter("together", deltas=["unused"])
        user = make_user({"nano": 100})

        result = await build_orchestrator(make_router(adapter)).prepare_turn(
            ChatRequest(user, "remember: my dog is Rex", "nano")
        )

        assert isinstance(result, Acknowledgement)
        assert result.bot_text == 'OK, I\'ll remember that: "my dog is Rex"'
        assert adapter.calls == []
        assert [m.text for m in store.memories] == ["my dog is Rex"]
        assert store.usage_records == []
        assert await store.get_balance(user.id, "nano") == 100
        assert [m.role for m in store.messages] == [MessageRole.USER, MessageRole.ASSISTANT]

    @pytest.mark.asyncio
    async def test_acknowledgement_payload(self, build_orchestrator, model_router, make_user):
        result = await build_orchestrator(model_router).prepare_turn(
            ChatRequest(make_user({"nano": 100}), "Remember I like tea", "nano")
        )
        payload = result.to_dict()
        assert payload["conversationId"] == str(result.conversation_id)
        assert payload["message"]["user"] == "Remember I like tea"
        assert payload["message"]["bot"].endswith('"I like tea"')

    @pytest.mark.asyncio
    async def test_budget_checked_before_short_circuit(self, build_orchestrator, model_router, make_user, store):
        with pytest.raises(InsufficientBudgetError):
            await build_orchestrator(model_router).prepare_turn(
                ChatRequest(make_user({"nano": 0}), "remember: x", "nano")
            )
        assert store.memories == []


class TestStreamingTurn:
    @pytest.mark.asyncio
    async def test_new_conversation_stream_and_persistence(
        self, build_orchestrator, model_router, make_user, store
    ):
        user = make_user({"nano": 1000})
        turn = await build_orchestrator(model_router).prepare_turn(ChatRequest(user, "Say hello", "nano"))

        events = await run_turn(turn)

        assert [e.type for e in events] == [
            RelayEventType.START,
            RelayEventType.CONTENT,
            RelayEventType.CONTENT,
            RelayEventType.DONE,
        ]
        assert events[0].data == str(turn.conversation.id)
        assert turn.relay.text == "Hello world"

        conversation = store.conversations[turn.conversation.id]
        assert [(m.role, m.content) for m in conversation.messages] == [
            (MessageRole.USER, "Say hello"),
            (MessageRole.ASSISTANT, "Hello world"),
        ]
        assert conversation.messages[1].model_used == "nano"
        assert conversation.title == "Say hello..."

    @pytest.mark.asyncio
    async def test_existing_conversation_has_no_start_event_and_keeps_title(
        self, build_orchestrator, model_router, make_user, store
    ):
        user = make_user({"nano": 1000})
        orchestrator = build_orchestrator(model_router)
        first = await orchestrator.prepare_turn(ChatRequest(user, "first question", "nano"))
        await run_turn(first)

        second = await orchestrator.prepare_turn(
            ChatRequest(user, "second question", "nano", conversation_id=first.conversation.id)
        )
        events = await run_turn(second)

        assert RelayEventType.START not in [e.type for e in events]
        conversation = store.conversations[first.conversation.id]
        assert len(conversation.messages) == 4
        assert conversation.title == "first question..."

    @pytest.mark.asyncio
    async def test_history_included_in_prompt(self, build_orchestrator, make_router, make_adapter, make_user):
        adapter = make_adapter("together", deltas=["ok"])
        user = make_user({"nano": 1000})
        orchestrator = build_orchestrator(make_router(adapter))
        first = await orchestrator.prepare_turn(ChatRequest(user, "question one", "nano"))
        await run_turn(first)

        second = await orchestrator.prepare_turn(
            ChatRequest(user, "question two", "nano", conversation_id=first.conversation.id)
        )
        await run_turn(second)

        prompt = adapter.calls[-1]["messages"]
        assert [m["role"] for m in prompt] == ["system", "user", "assistant", "user"]
        assert prompt[-1]["content"] == "question two"

    @pytest.mark.asyncio
    async def test_foreign_conversation_is_not_found(self, build_orchestrator, model_router, make_user):
        owner, intruder = make_user({"nano": 1000}), make_user({"nano": 1000})
        orchestrator = build_orchestrator(model_router)
        turn = await orchestrator.prepare_turn(ChatRequest(owner, "mine", "nano"))
        await run_turn(turn)

        with pytest.raises(NotFoundError):
            await orchestrator.prepare_turn(
                ChatRequest(intruder, "hi", "nano", conversation_id=turn.conversation.id)
            )

    @pytest.mark.asyncio
    async def test_unknown_conversation_is_not_found(self, build_orchestrator, model_router, make_user):
        with pytest.raises(NotFoundError):
            await build_orchestrator(model_router).prepare_turn(
                ChatRequest(make_user({"nano": 1000}), "hi", "nano", conversation_id=uuid.uuid4())
            )

    @pytest.mark.asyncio
    async def test_reasoning_hidden_from_client_and_history(
        self, build_orchestrator, make_router, make_adapter, make_user, store
    ):
        adapter = make_adapter("together", deltas=["<thi", "nk>secret plan</th", "ink>Answer"])
        turn = await build_orchestrator(make_router(adapter)).prepare_turn(
            ChatRequest(make_user({"nano": 1000}), "question", "nano")
        )
        await run_turn(turn)

        assert turn.relay.text == "Answer"
        assert store.messages[-1].content == "Answer"


class TestSettlement:
    @pytest.mark.asyncio
    async def test_exact_base_cost_balance_is_debited_at_least_base(
        self, build_orchestrator, model_router, make_user, store
    ):
        user = make_user({"nano": 20})
        turn = await build_orchestrator(model_router).prepare_turn(ChatRequest(user, "hello", "nano"))
        await run_turn(turn)

        assert len(store.usage_records) == 1
        assert store.usage_records[0].tokens_used >= 20
        assert store.usage_records[0].conversation_id == turn.conversation.id
        assert await store.get_balance(user.id, "nano") <= 0

    @pytest.mark.asyncio
    async def test_finalize_is_idempotent(self, build_orchestrator, model_router, make_user, store):
        turn = await build_orchestrator(model_router).prepare_turn(
            ChatRequest(make_user({"nano": 1000}), "hello", "nano")
        )
        await run_turn(turn)
        await turn.finalize()

        assert len(store.usage_records) == 1
        assert len(store.messages) == 2

    @pytest.mark.asyncio
    async def test_all_routes_failing_raises_before_any_state_besides_conversation(
        self, build_orchestrator, make_router, make_adapter, make_user, store
    ):
        from chatbroker.agent.llm import ProviderUnavailableError

        down = make_adapter("together", error=ProviderUnavailableError("down", adapter_id="together"))
        with pytest.raises(UpstreamUnavailableError):
            await build_orchestrator(make_router(down)).prepare_turn(
                ChatRequest(make_user({"nano": 1000}), "hello", "nano")
            )
        assert store.messages == []
        assert store.usage_records == []

    @pytest.mark.asyncio
    async def test_errored_stream_without_text_is_not_charged(
        self, build_orchestrator, make_router, make_adapter, make_user, store
    ):
        # The first delta is empty after filtering, then the upstream breaks
        adapter = make_adapter("together", deltas=["<think>x</think>", "never"], fail_after=1)
        turn = await build_orchestrator(make_router(adapter)).prepare_turn(
            ChatRequest(make_user({"nano": 1000}), "hello", "nano")
        )
        events = await run_turn(turn)

        assert [e.type for e in events][-2:] == [RelayEventType.ERROR, RelayEventType.DONE]
        assert turn.relay.outcome is RelayOutcome.ERRORED
        assert store.messages == []
        assert store.usage_records == []

    @pytest.mark.asyncio
    async def test_errored_stream_with_partial_text_is_persisted_and_charged(
        self, build_orchestrator, make_router, make_adapter, make_user, store
    ):
        adapter = make_adapter("together", deltas=["partial", "lost"], fail_after=1)
        turn = await build_orchestrator(make_router(adapter)).prepare_turn(
            ChatRequest(make_user({"nano": 1000}), "hello", "nano")
        )
        await run_turn(turn)

        assert store.messages[-1].content == "partial"
        assert len(store.usage_records) == 1

    @pytest.mark.asyncio
    async def test_disconnect_still_settles_delivered_text(
        self, build_orchestrator, make_router, make_adapter, make_user, store
    ):
        adapter = make_adapter("together", deltas=["one ", "two ", "three"])
        disconnected = False

        async def is_disconnected() -> bool:
            return disconnected

        turn = await build_orchestrator(make_router(adapter)).prepare_turn(
            ChatRequest(make_user({"nano": 1000}), "count", "nano"),
            is_disconnected=is_disconnected,
        )
        received = []
        async for event in turn.events():
            if event.type is RelayEventType.CONTENT:
                received.append(event.data)
                disconnected = True
        await turn.finalize()

        assert received == ["one "]
        assert turn.relay.outcome is RelayOutcome.DISCONNECTED
        assert store.messages[-1].content == "one "
        assert len(store.usage_records) == 1


class TestMemoryIntegration:
    @pytest.mark.asyncio
    async def test_implicit_fact_noted_and_stored(self, build_orchestrator, model_router, make_user, store):
        user = make_user({"nano": 1000})
        turn = await build_orchestrator(model_router).prepare_turn(
            ChatRequest(user, "My name is Ada, what's yours?", "nano")
        )
        events = await run_turn(turn)

        contents = [e.data for e in events if e.type is RelayEventType.CONTENT]
        assert contents[0] == NOTED_PREFIX
        assert [m.text for m in store.memories] == ["My name is Ada, what's yours?"]
        # The marker is not model output
        assert turn.relay.text == "Hello world"

    @pytest.mark.asyncio
    async def test_stored_hints_injected_after_system_prompt(
        self, build_orchestrator, make_router, make_adapter, make_user, cache, store, fake_settings
    ):
        adapter = make_adapter("together", deltas=["ok"])
        user = make_user({"nano": 1000})
        await MemoryEngine(store, cache).remember(user.id, "lives in Oslo")

        turn = await build_orchestrator(make_router(adapter)).prepare_turn(
            ChatRequest(user, "weather?", "nano")
        )
        await run_turn(turn)

        prompt = adapter.calls[0]["messages"]
        assert prompt[0] == {"role": "system", "content": fake_settings.system_prompt}
        assert prompt[1]["role"] == "system"
        assert prompt[1]["content"].startswith(HINT_PREAMBLE)
        assert "- lives in Oslo" in prompt[1]["content"]

    @pytest.mark.asyncio
    async def test_client_hints_take_precedence_and_are_bounded(
        self, build_orchestrator, make_router, make_adapter, make_user
    ):
        adapter = make_adapter("together", deltas=["ok"])
        hints = [f"hint {i}" for i in range(12)]

        turn = await build_orchestrator(make_router(adapter)).prepare_turn(
            ChatRequest(make_user({"nano": 1000}), "weather?", "nano", memory_hints=hints)
        )
        await run_turn(turn)

        hint_block = adapter.calls[0]["messages"][1]["content"]
        assert "- hint 7" in hint_block
        assert "- hint 8" not in hint_block

    @pytest.mark.asyncio
    async def test_file_context_appended_to_prompt_but_not_stored_message(
        self, build_orchestrator, make_router, make_adapter, make_user, store
    ):
        adapter = make_adapter("together", deltas=["ok"])
        turn = await build_orchestrator(make_router(adapter)).prepare_turn(
            ChatRequest(make_user({"nano": 1000}), "summarize", "nano", file_context="a,b,c")
        )
        await run_turn(turn)

        assert adapter.calls[0]["messages"][-1]["content"] == "summarize\n\n[Attached file content]\na,b,c"
        user_message = store.messages[0]
        assert user_message.content == "summarize"
        assert user_message.file_context == "a,b,c"


class TestHelpers:
    def test_title_truncated_to_thirty_chars(self):
        assert title_from_message("a" * 50) == "a" * 30 + "..."
        assert title_from_message("short") == "short..."

    def test_compose_without_file(self):
        assert compose_user_content("hi", None) == "hi"
        assert compose_user_content("hi", "") == "hi"

    def test_default_title(self):
        assert DEFAULT_TITLE == "New Chat"
