"""Conversation and Message models.

A Conversation is an append-only thread owned by one user. Each chat
exchange is stored as two role-tagged messages (user, then assistant)
ordered by sequence_number, which is what prompt reconstruction walks.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import DateTime, Enum, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from chatbroker.database import Base

DEFAULT_TITLE = "New Chat"


class MessageRole(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"


class Conversation(Base):
    __tablename__ = "conversations"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False, default=DEFAULT_TITLE)
    last_message_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )

    messages: Mapped[list[Message]] = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="Message.sequence_number",
    )

    __table_args__ = (
        Index("ix_conversations_user_last_message", "user_id", "last_message_at"),
    )

    def history(self) -> list[dict[str, str]]:
        """Messages in OpenAI chat format, oldest first."""
        ordered = sorted(self.messages, key=lambda m: m.sequence_number)
        return [{"role": m.role.value, "content": m.content} for m in ordered]

    def to_dict(self, *, include_messages: bool = False) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": str(self.id),
            "title": self.title,
            "lastMessageAt": self.last_message_at.isoformat(),
            "createdAt": self.created_at.isoformat(),
        }
        if include_messages:
            ordered = sorted(self.messages, key=lambda m: m.sequence_number)
            data["messages"] = [m.to_dict() for m in ordered]
        return data

    def __repr__(self) -> str:
        return f"<Conversation id={self.id} user={self.user_id}>"


class Message(Base):
    __tablename__ = "messages"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role: Mapped[MessageRole] = mapped_column(
        Enum(MessageRole, name="message_role"),
        nullable=False,
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)

    # Logical model id that produced the reply (NULL for user messages)
    model_used: Mapped[str | None] = mapped_column(String(64), nullable=True)
    # Text extracted from an attached file, kept separately for display
    file_context: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )

    conversation: Mapped[Conversation] = relationship(
        "Conversation", back_populates="messages"
    )

    __table_args__ = (
        Index("ix_messages_conversation_seq", "conversation_id", "sequence_number", unique=True),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "role": self.role.value,
            "content": self.content,
            "sequenceNumber": self.sequence_number,
            "modelUsed": self.model_used,
            "fileContext": self.file_context,
            "timestamp": self.created_at.isoformat(),
        }

    def __repr__(self) -> str:
        return f"<Message id={self.id} role={self.role} conv={self.conversation_id}>"
