"""User model.

Account management lives outside this service; the chat pipeline only
reads a user's unlimited-usage entitlement (paid flag plus paid-until
window) to decide whether token metering applies.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import Boolean, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from chatbroker.database import Base


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    is_paid_user: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    paid_until: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="End of the unlimited-usage window; NULL = never entitled",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )

    def has_active_entitlement(self, now: datetime | None = None) -> bool:
        """True when the user is paid and the paid-until window is still open."""
        if not self.is_paid_user or self.paid_until is None:
            return False
        return self.paid_until > (now or datetime.now(UTC))

    def __repr__(self) -> str:
        return f"<User id={self.id} paid={self.is_paid_user}>"
