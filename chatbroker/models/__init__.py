"""ORM models package.

Import all models here so that SQLAlchemy's metadata is fully populated
before tables are created.
"""

from chatbroker.models.conversation import Conversation, Message, MessageRole
from chatbroker.models.memory import MemoryCategory, MemoryItem
from chatbroker.models.token_budget import TokenBalanceRecord, TokenUsageRecord
from chatbroker.models.user import User

__all__ = [
    "Conversation",
    "MemoryCategory",
    "MemoryItem",
    "Message",
    "MessageRole",
    "TokenBalanceRecord",
    "TokenUsageRecord",
    "User",
]
