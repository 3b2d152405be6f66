"""Token meter: pre-flight budget gate and post-hoc settlement.

Balances are prepaid per (user, logical model). A chat turn is gated on
the model's base cost before any provider call, and settled afterwards by
debiting max(estimated tokens, base cost) through one atomic store
increment plus an append-only usage record.

Users with an active unlimited entitlement (paid flag and a paid-until
window in the future) bypass both the gate and settlement.

Settlement runs after the reply has already been shown, so a persistence
failure is retried once and then logged at error severity; it never
propagates into the chat response.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import TYPE_CHECKING, Any

import structlog
import tiktoken
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

if TYPE_CHECKING:
    from chatbroker.agent.model_router.catalog import LogicalModel
    from chatbroker.models.user import User
    from chatbroker.services.store import ChatStore

log = structlog.get_logger(__name__)


@lru_cache(maxsize=4)
def _load_encoding(name: str) -> Any | None:
    try:
        return tiktoken.get_encoding(name)
    except Exception as exc:
        log.warning("token_meter.encoding_unavailable", encoding=name, error=str(exc))
        return None


def estimate_tokens(text: str, encoding_name: str = "cl100k_base") -> int:
    """Deterministic token estimate for text.

    Uses the tiktoken encoding when it can be loaded, otherwise
    ceil(len(text) / 4).
    """
    if not text:
        return 0
    encoding = _load_encoding(encoding_name) if encoding_name else None
    if encoding is None:
        return math.ceil(len(text) / 4)
    return len(encoding.encode(text, disallowed_special=()))


@dataclass(frozen=True)
class BudgetDecision:
    """Result of the pre-flight gate.

    Attributes:
        allowed: True if the turn may proceed
        model_id: Logical model checked
        base_cost: The model's per-message cost floor
        balance: Current balance (None when the user is entitled)
        entitled: User has active unlimited usage
        reason: Client-facing denial message when not allowed
    """

    allowed: bool
    model_id: str
    base_cost: int
    balance: int | None = None
    entitled: bool = False
    reason: str | None = None


@dataclass(frozen=True)
class Settlement:
    """Outcome of settling one turn."""

    debited: int
    estimated: int
    new_balance: int | None


class TokenMeter:
    """Gates and settles chat turns against per-model token balances."""

    def __init__(self, store: ChatStore, *, encoding_name: str = "cl100k_base") -> None:
        self._store = store
        self._encoding_name = encoding_name

    def estimate(self, text: str) -> int:
        return estimate_tokens(text, self._encoding_name)

    async def check_budget(
        self,
        user: User,
        model: LogicalModel,
        now: datetime | None = None,
    ) -> BudgetDecision:
        """Decide whether user may send one message to model.

        Args:
            user: Requesting user (entitlement is read from it)
            model: Logical model with its base cost
            now: Clock override for tests

        Returns:
            BudgetDecision; denial carries a message quoting balance and base cost
        """
        if user.has_active_entitlement(now):
            log.debug("token_meter.entitled", user_id=str(user.id), model_id=model.id)
            return BudgetDecision(
                allowed=True,
                model_id=model.id,
                base_cost=model.base_cost,
                entitled=True,
            )

        balance = await self._store.get_balance(user.id, model.id)
        if balance < model.base_cost:
            log.info(
                "token_meter.denied",
                user_id=str(user.id),
                model_id=model.id,
                balance=balance,
                base_cost=model.base_cost,
            )
            return BudgetDecision(
                allowed=False,
                model_id=model.id,
                base_cost=model.base_cost,
                balance=balance,
                reason=(
                    f"Insufficient {model.name} tokens. This message costs at least "
                    f"{model.base_cost} tokens. You have {balance} {model.name} tokens."
                ),
            )

        return BudgetDecision(
            allowed=True,
            model_id=model.id,
            base_cost=model.base_cost,
            balance=balance,
        )

    async def settle(
        self,
        user: User,
        model: LogicalModel,
        user_text: str,
        bot_text: str,
        *,
        conversation_id: uuid.UUID | None = None,
        now: datetime | None = None,
    ) -> Settlement | None:
        """Debit the turn's usage and append a usage record.

        The debit and the usage record are separate store calls, each
        retried once on its own, so a retry never debits twice.

        Returns:
            Settlement, or None for entitled users and persistent store failures
        """
        if user.has_active_entitlement(now):
            return None

        estimated = self.estimate(user_text) + self.estimate(bot_text)
        debit = max(estimated, model.base_cost)

        try:
            new_balance = await self._with_retry(
                self._store.adjust_balance, user.id, model.id, -debit
            )
        except Exception as exc:
            log.error(
                "token_meter.settlement_failed",
                stage="debit",
                user_id=str(user.id),
                model_id=model.id,
                tokens=debit,
                error=str(exc),
            )
            return None

        try:
            await self._with_retry(
                self._store.append_usage,
                user.id,
                model.id,
                debit,
                conversation_id=conversation_id,
            )
        except Exception as exc:
            log.error(
                "token_meter.settlement_failed",
                stage="usage_record",
                user_id=str(user.id),
                model_id=model.id,
                tokens=debit,
                error=str(exc),
            )

        log.info(
            "token_meter.settled",
            user_id=str(user.id),
            model_id=model.id,
            estimated=estimated,
            debited=debit,
            balance=new_balance,
        )
        return Settlement(debited=debit, estimated=estimated, new_balance=new_balance)

    @staticmethod
    async def _with_retry(func: Any, *args: Any, **kwargs: Any) -> Any:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(2),
            wait=wait_exponential(multiplier=0.1, max=1),
            reraise=True,
        ):
            with attempt:
                return await func(*args, **kwargs)
        return None
