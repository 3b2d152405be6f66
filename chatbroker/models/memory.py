"""Long-term user memory.

A MemoryItem is one free-text fact about a user. Its category is derived
from the text and decides the retention window; expired items are hidden
from reads and swept opportunistically.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum

from sqlalchemy import DateTime, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from chatbroker.database import Base


class MemoryCategory(StrEnum):
    CONTACT = "contact"
    PERSONAL = "personal"
    SCHEDULE = "schedule"
    WORK = "work"
    GENERAL = "general"


class MemoryItem(Base):
    __tablename__ = "memories"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    text: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=MemoryCategory.GENERAL.value,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="NULL = never expires",
    )

    __table_args__ = (
        Index("ix_memories_user_created", "user_id", "created_at"),
        Index("ix_memories_expires_at", "expires_at"),
    )

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at is not None and self.expires_at <= (now or datetime.now(UTC))

    def to_dict(self) -> dict[str, str | None]:
        return {
            "id": str(self.id),
            "text": self.text,
            "category": self.category,
            "timestamp": self.created_at.isoformat(),
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
        }

    def __repr__(self) -> str:
        return f"<MemoryItem id={self.id} user={self.user_id} category={self.category}>"
