"""Token balance and usage ORM models.

Design principles:
- TokenBalanceRecord: one row per (user, logical model). Only ever changed
  through a single atomic ``balance = balance + :delta`` statement so that
  concurrent settlements for the same pair cannot lose an update.
- TokenUsageRecord: append-only audit trail of every settled chat turn.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from chatbroker.database import Base


class TokenBalanceRecord(Base):
    """Prepaid token balance for one (user, logical model) pair.

    Attributes:
        id: UUID primary key
        user_id: Owning user
        model_id: Logical model id (nano / mini / flagship)
        balance: Remaining tokens; may go negative after settlement
        updated_at: Last modification timestamp (UTC)
    """

    __tablename__ = "token_balances"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    model_id: Mapped[str] = mapped_column(String(64), nullable=False)
    balance: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Remaining tokens; negative after post-hoc deficit settlement",
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    __table_args__ = (
        # One balance row per (user, model). Also the upsert conflict target.
        Index("ix_token_balances_user_model", "user_id", "model_id", unique=True),
    )

    def __repr__(self) -> str:
        return f"<TokenBalanceRecord user={self.user_id} model={self.model_id} balance={self.balance}>"


class TokenUsageRecord(Base):
    """Append-only log of settled chat turns.

    Attributes:
        id: UUID primary key
        user_id: User that was debited
        conversation_id: Conversation the turn belonged to (nullable)
        model_used: Logical model id
        tokens_used: Tokens debited (never below the model's base cost)
        timestamp: UTC timestamp of settlement
    """

    __tablename__ = "token_usage_records"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    conversation_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("conversations.id", ondelete="SET NULL"),
        nullable=True,
    )
    model_used: Mapped[str] = mapped_column(String(64), nullable=False)
    tokens_used: Mapped[int] = mapped_column(Integer, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )

    __table_args__ = (
        Index("ix_token_usage_user_time", "user_id", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<TokenUsageRecord user={self.user_id} model={self.model_used} tokens={self.tokens_used}>"
