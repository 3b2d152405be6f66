"""Tests for the TokenMeter.

Tests cover:
- Gate: allow at/above base cost, deny below with balance and cost in reason
- Entitlement bypass (paid flag + future paid-until), expired entitlement
- Settlement floor: max(estimate, base cost)
- Entitled users are never debited
- Concurrent settlements do not lose updates
- Store failures are retried once and never raised
"""

from __future__ import annotations

import asyncio
import math
from unittest.mock import AsyncMock

import pytest

from chatbroker.agent.model_router.budget import TokenMeter, estimate_tokens
from chatbroker.agent.model_router.catalog import build_catalog


@pytest.fixture
def catalog(fake_settings):
    return build_catalog(fake_settings, frozenset({"together", "openai", "nebius"}))


@pytest.fixture
def meter(store):
    return TokenMeter(store, encoding_name="")


class TestEstimate:
    def test_chars_over_four_fallback(self):
        assert estimate_tokens("abcdefghi", "") == math.ceil(9 / 4)

    def test_empty_text_is_zero(self):
        assert estimate_tokens("", "") == 0

    def test_unloadable_encoding_falls_back(self):
        assert estimate_tokens("abcd" * 10, "no-such-encoding") == 10


class TestCheckBudget:
    @pytest.mark.asyncio
    async def test_allows_when_balance_covers_base_cost(self, meter, make_user, catalog):
        user = make_user({"nano": 20})
        decision = await meter.check_budget(user, catalog["nano"])
        assert decision.allowed is True
        assert decision.balance == 20

    @pytest.mark.asyncio
    async def test_denies_below_base_cost(self, meter, make_user, catalog):
        user = make_user({"flagship": 199})
        decision = await meter.check_budget(user, catalog["flagship"])

        assert decision.allowed is False
        assert "199" in decision.reason
        assert "200" in decision.reason

    @pytest.mark.asyncio
    async def test_missing_balance_defaults_to_zero(self, meter, make_user, catalog):
        user = make_user()
        decision = await meter.check_budget(user, catalog["nano"])
        assert decision.allowed is False
        assert decision.balance == 0

    @pytest.mark.asyncio
    async def test_entitled_user_always_allowed(self, meter, make_user, catalog):
        user = make_user(paid_days=10)
        decision = await meter.check_budget(user, catalog["flagship"])
        assert decision.allowed is True
        assert decision.entitled is True

    @pytest.mark.asyncio
    async def test_expired_entitlement_is_metered(self, meter, make_user, catalog):
        user = make_user(paid_days=-1)
        decision = await meter.check_budget(user, catalog["mini"])
        assert decision.allowed is False


class TestSettle:
    @pytest.mark.asyncio
    async def test_debits_base_cost_for_short_exchange(self, meter, store, make_user, catalog):
        user = make_user({"mini": 500})

        settlement = await meter.settle(user, catalog["mini"], "hi", "hello")

        assert settlement.debited == 100
        assert await store.get_balance(user.id, "mini") == 400
        assert len(store.usage_records) == 1
        assert store.usage_records[0].tokens_used == 100

    @pytest.mark.asyncio
    async def test_debits_estimate_when_above_base_cost(self, meter, store, make_user, catalog):
        user = make_user({"nano": 1000})
        bot_text = "x" * 400  # 100 tokens by the chars/4 estimate

        settlement = await meter.settle(user, catalog["nano"], "abcd", bot_text)

        assert settlement.estimated == 101
        assert settlement.debited == 101
        assert await store.get_balance(user.id, "nano") == 899

    @pytest.mark.asyncio
    async def test_balance_may_go_negative(self, meter, store, make_user, catalog):
        user = make_user({"nano": 20})
        await meter.settle(user, catalog["nano"], "q", "y" * 200)
        assert await store.get_balance(user.id, "nano") < 0

    @pytest.mark.asyncio
    async def test_entitled_user_not_debited(self, meter, store, make_user, catalog):
        user = make_user({"flagship": 5}, paid_days=3)

        assert await meter.settle(user, catalog["flagship"], "q", "a") is None
        assert await store.get_balance(user.id, "flagship") == 5
        assert store.usage_records == []

    @pytest.mark.asyncio
    async def test_concurrent_settlements_do_not_lose_updates(self, meter, store, make_user, catalog):
        user = make_user({"nano": 1000})

        await asyncio.gather(*(meter.settle(user, catalog["nano"], "q", "a") for _ in range(10)))

        assert await store.get_balance(user.id, "nano") == 1000 - 10 * 20
        assert len(store.usage_records) == 10

    @pytest.mark.asyncio
    async def test_store_failure_retried_once_then_swallowed(self, meter, store, make_user, catalog):
        user = make_user({"nano": 100})
        store.adjust_balance = AsyncMock(side_effect=ConnectionError("db down"))

        assert await meter.settle(user, catalog["nano"], "q", "a") is None
        assert store.adjust_balance.await_count == 2
        assert store.usage_records == []

    @pytest.mark.asyncio
    async def test_transient_store_failure_recovers_on_retry(self, meter, store, make_user, catalog):
        user = make_user({"nano": 100})
        store.adjust_balance = AsyncMock(side_effect=[ConnectionError("blip"), 80])

        settlement = await meter.settle(user, catalog["nano"], "q", "a")

        assert settlement.new_balance == 80
        assert store.adjust_balance.await_count == 2
        assert len(store.usage_records) == 1
