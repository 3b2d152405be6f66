"""Memory engine: what to remember about a user, for how long, and when to recall it.

There is no dedicated memory model. A message is classified as:

- explicit:  the user asked ("remember ...", "save this", ...). The fact
  is stored and the turn is answered with an acknowledgement only.
- implicit:  a small judge completion (YES/NO, 2-token budget, short
  timeout) says the message holds a durable fact, or, when the judge is
  not configured or fails, one of a few keyword heuristics matches.
- nothing to remember.

Each stored fact gets a keyword-derived category and a category-derived
expiry. Recall (retrieve_hints) never calls a model: it reads the most
recent non-expired facts through a short-lived cache.
"""

from __future__ import annotations

import asyncio
import re
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import structlog

from chatbroker.agent.reasoning_filter import strip_reasoning
from chatbroker.models.memory import MemoryCategory, MemoryItem

if TYPE_CHECKING:
    from chatbroker.agent.model_router.router import ModelRouter
    from chatbroker.cache.backend import CacheBackend
    from chatbroker.services.store import ChatStore

log = structlog.get_logger(__name__)

EXPLICIT_PATTERN = re.compile(r"\b(remember|save this|store this|keep this)\b", re.IGNORECASE)

_WORTH_REMEMBERING = (
    re.compile(r"\bmy name is\b", re.IGNORECASE),
    re.compile(r"\bcall me\b", re.IGNORECASE),
    re.compile(r"\bemail[:\s]", re.IGNORECASE),
    re.compile(r"\bphone[:\s]", re.IGNORECASE),
    re.compile(r"\b(i|we) prefer\b", re.IGNORECASE),
    re.compile(r"\b(timezone|time zone)\b", re.IGNORECASE),
    re.compile(r"\b(birthday|dob)\b", re.IGNORECASE),
)

# Checked in order; first match wins
_CATEGORY_RULES: tuple[tuple[MemoryCategory, re.Pattern[str]], ...] = (
    (MemoryCategory.CONTACT, re.compile(r"email|@", re.IGNORECASE)),
    (MemoryCategory.PERSONAL, re.compile(r"birthday|anniversary", re.IGNORECASE)),
    (MemoryCategory.SCHEDULE, re.compile(r"meeting|call|schedule", re.IGNORECASE)),
    (MemoryCategory.WORK, re.compile(r"project|task|deadline", re.IGNORECASE)),
)

EXPIRY_DAYS: dict[MemoryCategory, int] = {
    MemoryCategory.SCHEDULE: 7,
    MemoryCategory.WORK: 30,
    MemoryCategory.PERSONAL: 180,
    MemoryCategory.CONTACT: 365,
    MemoryCategory.GENERAL: 90,
}

JUDGE_PROMPT = (
    "Does the following message contain a useful fact worth remembering for "
    'future conversations? Answer with only YES or NO. Message: "{message}"'
)

HINT_PREAMBLE = (
    "Relevant user memory (use respectfully and privately, do not ask the user to repeat):"
)


@dataclass(frozen=True)
class MemoryDecision:
    """Outcome of classify().

    Attributes:
        should_remember: Persist a fact from this message
        is_explicit: The user asked for it; the turn short-circuits
        source: Which path decided ("explicit", "judge", "heuristic")
    """

    should_remember: bool
    is_explicit: bool
    source: str


def heuristic_worth_remembering(text: str) -> bool:
    """Keyword fallback used when the judge is unavailable."""
    return any(pattern.search(text) for pattern in _WORTH_REMEMBERING)


def categorize(text: str) -> MemoryCategory:
    """Derive a category from keywords. Total: always returns a category."""
    for category, pattern in _CATEGORY_RULES:
        if pattern.search(text):
            return category
    return MemoryCategory.GENERAL


def expiry_for(category: MemoryCategory | str, now: datetime | None = None) -> datetime:
    """Expiry timestamp for a fact of category stored at now."""
    days = EXPIRY_DAYS[MemoryCategory(category)]
    return (now or datetime.now(UTC)) + timedelta(days=days)


def extract_fact(message: str) -> str:
    """Fact text for an explicit request: what follows "remember:" or "remember"."""
    lowered = message.lower()
    index = lowered.find("remember:")
    if index != -1:
        return message[index + len("remember:"):].strip()
    index = lowered.find("remember")
    if index != -1:
        return message[index + len("remember"):].strip()
    return message.strip()


def build_hint_message(hints: list[str]) -> dict[str, str] | None:
    """System message injecting hints into a prompt, or None if there are none."""
    lines = [hint.strip() for hint in hints if hint and hint.strip()]
    if not lines:
        return None
    body = "\n".join(f"- {line}" for line in lines)
    return {"role": "system", "content": f"{HINT_PREAMBLE}\n{body}"}


def _cache_key(user_id: uuid.UUID) -> str:
    return f"memory:{user_id}"


class MemoryEngine:
    """Classifies, stores and recalls user memories.

    All failures here are absorbed: memory is best-effort and never fails
    a chat turn.
    """

    def __init__(
        self,
        store: ChatStore,
        cache: CacheBackend,
        router: ModelRouter | None = None,
        *,
        judge_model: str | None = None,
        judge_timeout: float = 10.0,
        hint_limit: int = 8,
        cache_ttl: int = 30,
        heuristic: Callable[[str], bool] = heuristic_worth_remembering,
    ) -> None:
        self._store = store
        self._cache = cache
        self._router = router
        self._judge_model = judge_model if router is not None else None
        self._judge_timeout = judge_timeout
        self._hint_limit = hint_limit
        self._cache_ttl = cache_ttl
        self._heuristic = heuristic

    # ------------------------------------------------------------------ #
    # Classification
    # ------------------------------------------------------------------ #

    async def classify(self, message: str) -> MemoryDecision:
        """Decide whether message holds a fact worth remembering."""
        if EXPLICIT_PATTERN.search(message):
            return MemoryDecision(should_remember=True, is_explicit=True, source="explicit")

        verdict = await self._ask_judge(message)
        if verdict is not None:
            return MemoryDecision(should_remember=verdict, is_explicit=False, source="judge")

        return MemoryDecision(
            should_remember=self._heuristic(message),
            is_explicit=False,
            source="heuristic",
        )

    async def _ask_judge(self, message: str) -> bool | None:
        """YES/NO from the judge model; None when unavailable, slow or unclear."""
        if self._router is None or self._judge_model is None:
            return None

        prompt = [{"role": "user", "content": JUDGE_PROMPT.format(message=message)}]
        try:
            answer = await asyncio.wait_for(
                self._router.resolve_completion(self._judge_model, prompt, max_tokens=2),
                timeout=self._judge_timeout,
            )
        except Exception as exc:
            log.warning(
                "memory.judge_failed",
                model_id=self._judge_model,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None

        decision = strip_reasoning(answer, scrubber=None).strip().upper()
        if decision.startswith("YES"):
            return True
        if decision.startswith("NO"):
            return False
        log.debug("memory.judge_unclear", answer=decision[:20])
        return None

    # ------------------------------------------------------------------ #
    # Recall
    # ------------------------------------------------------------------ #

    async def list_memories(self, user_id: uuid.UUID, now: datetime | None = None) -> list[dict[str, Any]]:
        """All non-expired memories for user, newest first, via the cache."""
        now = now or datetime.now(UTC)
        key = _cache_key(user_id)

        cached = await self._cache.get(key)
        if cached is None:
            items = await self._store.list_memories(user_id, now=now)
            cached = [item.to_dict() for item in items]
            await self._cache.set(key, cached, self._cache_ttl)

        # Entries may have expired while sitting in the cache
        return [entry for entry in cached if not _expired(entry, now)]

    async def retrieve_hints(
        self,
        user_id: uuid.UUID,
        now: datetime | None = None,
        limit: int | None = None,
    ) -> list[str]:
        """Up to limit (default hint_limit) most recent non-expired fact texts."""
        try:
            entries = await self.list_memories(user_id, now)
        except Exception as exc:
            log.warning("memory.retrieve_failed", user_id=str(user_id), error=str(exc))
            return []
        return [entry["text"] for entry in entries[: limit or self._hint_limit]]

    # ------------------------------------------------------------------ #
    # Storage
    # ------------------------------------------------------------------ #

    async def remember(
        self,
        user_id: uuid.UUID,
        text: str,
        *,
        category: MemoryCategory | str | None = None,
        expires_at: datetime | None = None,
        now: datetime | None = None,
    ) -> MemoryItem:
        """Persist a fact, invalidate the user's cache and sweep expired facts.

        Category is derived from text when not given; expiry from category.
        """
        now = now or datetime.now(UTC)
        resolved = MemoryCategory(category) if category else categorize(text)
        item = await self._store.append_memory(
            user_id,
            text,
            resolved.value,
            expires_at or expiry_for(resolved, now),
        )
        await self._cache.delete(_cache_key(user_id))
        log.info("memory.stored", user_id=str(user_id), category=resolved.value)

        await self.sweep_expired(now)
        return item

    async def revise(
        self,
        user_id: uuid.UUID,
        memory_id: uuid.UUID,
        text: str,
        *,
        category: MemoryCategory | str | None = None,
        expires_at: datetime | None = None,
        now: datetime | None = None,
    ) -> MemoryItem | None:
        """Replace a memory's text. Category and expiry are re-derived as in remember()."""
        resolved = MemoryCategory(category) if category else categorize(text)
        item = await self._store.update_memory(
            user_id,
            memory_id,
            text,
            resolved.value,
            expires_at or expiry_for(resolved, now or datetime.now(UTC)),
        )
        if item is not None:
            await self._cache.delete(_cache_key(user_id))
            log.info("memory.revised", user_id=str(user_id), category=resolved.value)
        return item

    async def forget(self, user_id: uuid.UUID, memory_id: uuid.UUID) -> bool:
        deleted = await self._store.delete_memory(user_id, memory_id)
        if deleted:
            await self._cache.delete(_cache_key(user_id))
        return deleted

    async def sweep_expired(self, now: datetime | None = None) -> int:
        """Best-effort removal of expired memories. Never raises."""
        try:
            removed = await self._store.delete_expired_memories(now or datetime.now(UTC))
        except Exception as exc:
            log.warning("memory.sweep_failed", error=str(exc))
            return 0
        if removed:
            log.info("memory.swept", removed=removed)
        return removed


def _expired(entry: dict[str, Any], now: datetime) -> bool:
    expires_at = entry.get("expiresAt")
    if not expires_at:
        return False
    return datetime.fromisoformat(expires_at) <= now
