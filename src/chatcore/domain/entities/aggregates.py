"""Read models returned by the reaction/thread aggregator."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class ReactionOp(str, Enum):
    """Reaction toggle operation."""

    ADD = "add"
    REMOVE = "remove"


class ReactionSummary(BaseModel):
    """Aggregate for one (message, emoji) pair.

    Attributes:
        message_id: Reacted message.
        emoji_code: Emoji code, e.g. ":thumbsup:" or a literal emoji.
        count: Number of distinct users with this reaction.
        user_ids: The reacting users, sorted.
        changed: False when the operation was an idempotent no-op.
    """

    message_id: str
    emoji_code: str
    count: int
    user_ids: list[str] = Field(default_factory=list)
    changed: bool = True


class ThreadSummary(BaseModel):
    """Aggregate for one thread root."""

    root_id: str
    reply_count: int
    last_reply_at: datetime | None = None
