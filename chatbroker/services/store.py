"""ChatStore: the persistence collaborator behind the chat pipeline.

The core never touches SQL directly; it calls these coarse operations.
Two implementations:

- SqlChatStore: PostgreSQL via SQLAlchemy async. Each call runs in its own
  short transaction from the session factory, because a streamed chat turn
  outlives any request-scoped session.
- InMemoryChatStore: process-local dicts guarded by an asyncio.Lock, used
  for tests and single-process development.

Balance changes go through adjust_balance() only, which is a single atomic
increment (upsert on first use) in both implementations.
"""

from __future__ import annotations

import asyncio
import uuid
from abc import ABC, abstractmethod
from datetime import UTC, datetime

import structlog
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from chatbroker.config import Settings, StoreBackend
from chatbroker.core.errors import NotFoundError
from chatbroker.database import get_session_factory
from chatbroker.models.conversation import DEFAULT_TITLE, Conversation, Message, MessageRole
from chatbroker.models.memory import MemoryItem
from chatbroker.models.token_budget import TokenBalanceRecord, TokenUsageRecord
from chatbroker.models.user import User

log = structlog.get_logger(__name__)


class ChatStore(ABC):
    """Coarse persistence operations used by the chat pipeline."""

    # Users ------------------------------------------------------------ #

    @abstractmethod
    async def get_user(self, user_id: uuid.UUID) -> User | None: ...

    # Balances and usage ----------------------------------------------- #

    @abstractmethod
    async def get_balance(self, user_id: uuid.UUID, model_id: str) -> int:
        """Current balance for (user, model); 0 when no row exists yet."""

    @abstractmethod
    async def adjust_balance(self, user_id: uuid.UUID, model_id: str, delta: int) -> int:
        """Atomically add delta (negative to debit) and return the new balance."""

    @abstractmethod
    async def list_balances(self, user_id: uuid.UUID) -> dict[str, int]: ...

    @abstractmethod
    async def append_usage(
        self,
        user_id: uuid.UUID,
        model_id: str,
        tokens: int,
        *,
        conversation_id: uuid.UUID | None = None,
    ) -> TokenUsageRecord: ...

    # Conversations ---------------------------------------------------- #

    @abstractmethod
    async def get_or_create_conversation(
        self,
        user_id: uuid.UUID,
        conversation_id: uuid.UUID | None = None,
    ) -> tuple[Conversation, bool]:
        """Return (conversation with messages loaded, created flag).

        Raises:
            NotFoundError: conversation_id given but not owned by user
        """

    @abstractmethod
    async def get_conversation(self, user_id: uuid.UUID, conversation_id: uuid.UUID) -> Conversation:
        """Conversation with messages loaded.

        Raises:
            NotFoundError: no such conversation for this user
        """

    @abstractmethod
    async def list_conversations(self, user_id: uuid.UUID) -> list[Conversation]:
        """User's conversations (messages not loaded), most recently active first."""

    @abstractmethod
    async def delete_conversation(self, user_id: uuid.UUID, conversation_id: uuid.UUID) -> bool: ...

    @abstractmethod
    async def append_exchange(
        self,
        conversation_id: uuid.UUID,
        user_text: str,
        bot_text: str,
        *,
        model_used: str | None = None,
        file_context: str | None = None,
        title: str | None = None,
    ) -> tuple[Message, Message]:
        """Append a user message and its reply as two consecutive messages.

        Both rows are written in one transaction while the conversation is
        locked, so concurrent turns on one conversation never interleave.
        title replaces the conversation title only while it is the default.

        Raises:
            NotFoundError: conversation does not exist
        """

    # Memories --------------------------------------------------------- #

    @abstractmethod
    async def list_memories(
        self,
        user_id: uuid.UUID,
        *,
        now: datetime,
        limit: int | None = None,
    ) -> list[MemoryItem]:
        """Non-expired memories, newest first."""

    @abstractmethod
    async def append_memory(
        self,
        user_id: uuid.UUID,
        text: str,
        category: str,
        expires_at: datetime | None,
    ) -> MemoryItem: ...

    @abstractmethod
    async def update_memory(
        self,
        user_id: uuid.UUID,
        memory_id: uuid.UUID,
        text: str,
        category: str,
        expires_at: datetime | None,
    ) -> MemoryItem | None:
        """Replace a memory's text, category and expiry; None when not found."""

    @abstractmethod
    async def delete_memory(self, user_id: uuid.UUID, memory_id: uuid.UUID) -> bool: ...

    @abstractmethod
    async def delete_expired_memories(
        self,
        now: datetime,
        *,
        user_id: uuid.UUID | None = None,
    ) -> int:
        """Remove expired memories (all users when user_id is None); return count."""


def _exchange_messages(
    conversation_id: uuid.UUID,
    last_sequence: int,
    user_text: str,
    bot_text: str,
    *,
    model_used: str | None,
    file_context: str | None,
    now: datetime,
) -> tuple[Message, Message]:
    user_message = Message(
        id=uuid.uuid4(),
        conversation_id=conversation_id,
        role=MessageRole.USER,
        content=user_text,
        sequence_number=last_sequence + 1,
        file_context=file_context,
        created_at=now,
    )
    bot_message = Message(
        id=uuid.uuid4(),
        conversation_id=conversation_id,
        role=MessageRole.ASSISTANT,
        content=bot_text,
        sequence_number=last_sequence + 2,
        model_used=model_used,
        created_at=now,
    )
    return user_message, bot_message


# ---------------------------------------------------------------------------
# SQL implementation
# ---------------------------------------------------------------------------


class SqlChatStore(ChatStore):
    """ChatStore backed by PostgreSQL through SQLAlchemy async sessions."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_user(self, user_id: uuid.UUID) -> User | None:
        async with self._session_factory() as session:
            return await session.get(User, user_id)

    async def get_balance(self, user_id: uuid.UUID, model_id: str) -> int:
        async with self._session_factory() as session:
            balance = await session.scalar(
                select(TokenBalanceRecord.balance).where(
                    TokenBalanceRecord.user_id == user_id,
                    TokenBalanceRecord.model_id == model_id,
                )
            )
            return balance or 0

    async def adjust_balance(self, user_id: uuid.UUID, model_id: str, delta: int) -> int:
        now = datetime.now(UTC)
        stmt = (
            pg_insert(TokenBalanceRecord)
            .values(id=uuid.uuid4(), user_id=user_id, model_id=model_id, balance=delta, updated_at=now)
            .on_conflict_do_update(
                index_elements=["user_id", "model_id"],
                set_={"balance": TokenBalanceRecord.balance + delta, "updated_at": now},
            )
            .returning(TokenBalanceRecord.balance)
        )
        async with self._session_factory() as session, session.begin():
            result = await session.execute(stmt)
            return result.scalar_one()

    async def list_balances(self, user_id: uuid.UUID) -> dict[str, int]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(TokenBalanceRecord.model_id, TokenBalanceRecord.balance).where(
                    TokenBalanceRecord.user_id == user_id
                )
            )
            return {model_id: balance for model_id, balance in result.all()}

    async def append_usage(
        self,
        user_id: uuid.UUID,
        model_id: str,
        tokens: int,
        *,
        conversation_id: uuid.UUID | None = None,
    ) -> TokenUsageRecord:
        record = TokenUsageRecord(
            id=uuid.uuid4(),
            user_id=user_id,
            conversation_id=conversation_id,
            model_used=model_id,
            tokens_used=tokens,
            timestamp=datetime.now(UTC),
        )
        async with self._session_factory() as session, session.begin():
            session.add(record)
        return record

    async def get_or_create_conversation(
        self,
        user_id: uuid.UUID,
        conversation_id: uuid.UUID | None = None,
    ) -> tuple[Conversation, bool]:
        if conversation_id is not None:
            return await self.get_conversation(user_id, conversation_id), False

        async with self._session_factory() as session, session.begin():
            now = datetime.now(UTC)
            conversation = Conversation(
                id=uuid.uuid4(),
                user_id=user_id,
                title=DEFAULT_TITLE,
                last_message_at=now,
                created_at=now,
                messages=[],
            )
            session.add(conversation)
        log.info("chat_store.conversation_created", conversation_id=str(conversation.id))
        return conversation, True

    async def get_conversation(self, user_id: uuid.UUID, conversation_id: uuid.UUID) -> Conversation:
        async with self._session_factory() as session:
            conversation = await session.scalar(
                select(Conversation)
                .where(Conversation.id == conversation_id, Conversation.user_id == user_id)
                .options(selectinload(Conversation.messages))
            )
        if conversation is None:
            raise NotFoundError("Conversation not found")
        return conversation

    async def list_conversations(self, user_id: uuid.UUID) -> list[Conversation]:
        async with self._session_factory() as session:
            result = await session.scalars(
                select(Conversation)
                .where(Conversation.user_id == user_id)
                .order_by(Conversation.last_message_at.desc())
            )
            return list(result.all())

    async def delete_conversation(self, user_id: uuid.UUID, conversation_id: uuid.UUID) -> bool:
        # Messages go with it through ON DELETE CASCADE
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                delete(Conversation).where(
                    Conversation.id == conversation_id, Conversation.user_id == user_id
                )
            )
            return result.rowcount > 0

    async def append_exchange(
        self,
        conversation_id: uuid.UUID,
        user_text: str,
        bot_text: str,
        *,
        model_used: str | None = None,
        file_context: str | None = None,
        title: str | None = None,
    ) -> tuple[Message, Message]:
        now = datetime.now(UTC)
        async with self._session_factory() as session, session.begin():
            # Row lock serializes concurrent turns on this conversation
            conversation = await session.scalar(
                select(Conversation).where(Conversation.id == conversation_id).with_for_update()
            )
            if conversation is None:
                raise NotFoundError("Conversation not found")
            last_seq = await session.scalar(
                select(func.max(Message.sequence_number)).where(
                    Message.conversation_id == conversation_id
                )
            )
            pair = _exchange_messages(
                conversation_id,
                last_seq or 0,
                user_text,
                bot_text,
                model_used=model_used,
                file_context=file_context,
                now=now,
            )
            session.add_all(pair)
            conversation.last_message_at = now
            if title is not None and conversation.title == DEFAULT_TITLE:
                conversation.title = title
        return pair

    async def list_memories(
        self,
        user_id: uuid.UUID,
        *,
        now: datetime,
        limit: int | None = None,
    ) -> list[MemoryItem]:
        stmt = (
            select(MemoryItem)
            .where(
                MemoryItem.user_id == user_id,
                or_(MemoryItem.expires_at.is_(None), MemoryItem.expires_at > now),
            )
            .order_by(MemoryItem.created_at.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._session_factory() as session:
            result = await session.scalars(stmt)
            return list(result.all())

    async def append_memory(
        self,
        user_id: uuid.UUID,
        text: str,
        category: str,
        expires_at: datetime | None,
    ) -> MemoryItem:
        item = MemoryItem(
            id=uuid.uuid4(),
            user_id=user_id,
            text=text,
            category=category,
            created_at=datetime.now(UTC),
            expires_at=expires_at,
        )
        async with self._session_factory() as session, session.begin():
            session.add(item)
        return item

    async def update_memory(
        self,
        user_id: uuid.UUID,
        memory_id: uuid.UUID,
        text: str,
        category: str,
        expires_at: datetime | None,
    ) -> MemoryItem | None:
        stmt = (
            update(MemoryItem)
            .where(MemoryItem.id == memory_id, MemoryItem.user_id == user_id)
            .values(text=text, category=category, expires_at=expires_at)
            .returning(MemoryItem)
        )
        async with self._session_factory() as session, session.begin():
            return await session.scalar(stmt)

    async def delete_memory(self, user_id: uuid.UUID, memory_id: uuid.UUID) -> bool:
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                delete(MemoryItem).where(MemoryItem.id == memory_id, MemoryItem.user_id == user_id)
            )
            return result.rowcount > 0

    async def delete_expired_memories(
        self,
        now: datetime,
        *,
        user_id: uuid.UUID | None = None,
    ) -> int:
        stmt = delete(MemoryItem).where(MemoryItem.expires_at.is_not(None), MemoryItem.expires_at <= now)
        if user_id is not None:
            stmt = stmt.where(MemoryItem.user_id == user_id)
        async with self._session_factory() as session, session.begin():
            result = await session.execute(stmt)
            return result.rowcount


# ---------------------------------------------------------------------------
# In-memory implementation (testing / dev)
# ---------------------------------------------------------------------------


class InMemoryChatStore(ChatStore):
    """Dict-backed ChatStore. Not shared across processes.

    ORM column defaults only fire on flush, so every instance created here
    gets its ids and timestamps set explicitly.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self.users: dict[uuid.UUID, User] = {}
        self.balances: dict[tuple[uuid.UUID, str], int] = {}
        self.usage_records: list[TokenUsageRecord] = []
        self.conversations: dict[uuid.UUID, Conversation] = {}
        self.memories: list[MemoryItem] = []

    def add_user(self, user: User) -> User:
        if user.id is None:
            user.id = uuid.uuid4()
        if user.created_at is None:
            user.created_at = datetime.now(UTC)
        if user.is_paid_user is None:
            user.is_paid_user = False
        self.users[user.id] = user
        return user

    @property
    def messages(self) -> list[Message]:
        return [m for conv in self.conversations.values() for m in conv.messages]

    async def get_user(self, user_id: uuid.UUID) -> User | None:
        return self.users.get(user_id)

    async def get_balance(self, user_id: uuid.UUID, model_id: str) -> int:
        return self.balances.get((user_id, model_id), 0)

    async def adjust_balance(self, user_id: uuid.UUID, model_id: str, delta: int) -> int:
        async with self._lock:
            key = (user_id, model_id)
            self.balances[key] = self.balances.get(key, 0) + delta
            return self.balances[key]

    async def list_balances(self, user_id: uuid.UUID) -> dict[str, int]:
        return {model_id: bal for (uid, model_id), bal in self.balances.items() if uid == user_id}

    async def append_usage(
        self,
        user_id: uuid.UUID,
        model_id: str,
        tokens: int,
        *,
        conversation_id: uuid.UUID | None = None,
    ) -> TokenUsageRecord:
        record = TokenUsageRecord(
            id=uuid.uuid4(),
            user_id=user_id,
            conversation_id=conversation_id,
            model_used=model_id,
            tokens_used=tokens,
            timestamp=datetime.now(UTC),
        )
        async with self._lock:
            self.usage_records.append(record)
        return record

    async def get_or_create_conversation(
        self,
        user_id: uuid.UUID,
        conversation_id: uuid.UUID | None = None,
    ) -> tuple[Conversation, bool]:
        async with self._lock:
            if conversation_id is not None:
                conversation = self.conversations.get(conversation_id)
                if conversation is None or conversation.user_id != user_id:
                    raise NotFoundError("Conversation not found")
                return conversation, False

            now = datetime.now(UTC)
            conversation = Conversation(
                id=uuid.uuid4(),
                user_id=user_id,
                title=DEFAULT_TITLE,
                last_message_at=now,
                created_at=now,
                messages=[],
            )
            self.conversations[conversation.id] = conversation
            return conversation, True

    async def get_conversation(self, user_id: uuid.UUID, conversation_id: uuid.UUID) -> Conversation:
        conversation = self.conversations.get(conversation_id)
        if conversation is None or conversation.user_id != user_id:
            raise NotFoundError("Conversation not found")
        return conversation

    async def list_conversations(self, user_id: uuid.UUID) -> list[Conversation]:
        owned = [c for c in self.conversations.values() if c.user_id == user_id]
        return sorted(owned, key=lambda c: c.last_message_at, reverse=True)

    async def delete_conversation(self, user_id: uuid.UUID, conversation_id: uuid.UUID) -> bool:
        async with self._lock:
            conversation = self.conversations.get(conversation_id)
            if conversation is None or conversation.user_id != user_id:
                return False
            del self.conversations[conversation_id]
            for record in self.usage_records:
                if record.conversation_id == conversation_id:
                    record.conversation_id = None
            return True

    async def append_exchange(
        self,
        conversation_id: uuid.UUID,
        user_text: str,
        bot_text: str,
        *,
        model_used: str | None = None,
        file_context: str | None = None,
        title: str | None = None,
    ) -> tuple[Message, Message]:
        async with self._lock:
            conversation = self.conversations.get(conversation_id)
            if conversation is None:
                raise NotFoundError("Conversation not found")
            now = datetime.now(UTC)
            pair = _exchange_messages(
                conversation_id,
                len(conversation.messages),
                user_text,
                bot_text,
                model_used=model_used,
                file_context=file_context,
                now=now,
            )
            conversation.messages.extend(pair)
            conversation.last_message_at = now
            if title is not None and conversation.title == DEFAULT_TITLE:
                conversation.title = title
            return pair

    async def list_memories(
        self,
        user_id: uuid.UUID,
        *,
        now: datetime,
        limit: int | None = None,
    ) -> list[MemoryItem]:
        live = [m for m in reversed(self.memories) if m.user_id == user_id and not m.is_expired(now)]
        live.sort(key=lambda m: m.created_at, reverse=True)
        return live[:limit] if limit is not None else live

    async def append_memory(
        self,
        user_id: uuid.UUID,
        text: str,
        category: str,
        expires_at: datetime | None,
    ) -> MemoryItem:
        item = MemoryItem(
            id=uuid.uuid4(),
            user_id=user_id,
            text=text,
            category=category,
            created_at=datetime.now(UTC),
            expires_at=expires_at,
        )
        async with self._lock:
            self.memories.append(item)
        return item

    async def update_memory(
        self,
        user_id: uuid.UUID,
        memory_id: uuid.UUID,
        text: str,
        category: str,
        expires_at: datetime | None,
    ) -> MemoryItem | None:
        async with self._lock:
            for item in self.memories:
                if item.id == memory_id and item.user_id == user_id:
                    item.text = text
                    item.category = category
                    item.expires_at = expires_at
                    return item
            return None

    async def delete_memory(self, user_id: uuid.UUID, memory_id: uuid.UUID) -> bool:
        async with self._lock:
            before = len(self.memories)
            self.memories = [
                m for m in self.memories if not (m.id == memory_id and m.user_id == user_id)
            ]
            return len(self.memories) < before

    async def delete_expired_memories(
        self,
        now: datetime,
        *,
        user_id: uuid.UUID | None = None,
    ) -> int:
        async with self._lock:
            before = len(self.memories)
            self.memories = [
                m
                for m in self.memories
                if not (m.is_expired(now) and (user_id is None or m.user_id == user_id))
            ]
            return before - len(self.memories)


def get_chat_store(settings: Settings) -> ChatStore:
    """Select the ChatStore implementation from settings.

    The SQL store requires init_db() to have run.
    """
    if settings.store_backend == StoreBackend.MEMORY:
        log.info("chat_store.backend_selected", backend="memory")
        return InMemoryChatStore()

    log.info("chat_store.backend_selected", backend="sql")
    return SqlChatStore(get_session_factory())
