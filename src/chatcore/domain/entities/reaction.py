"""Reaction rows and the cached per-emoji reaction counts."""

from datetime import datetime, timezone

from sqlmodel import Field, SQLModel

MAX_EMOJI_CODE_LENGTH = 50


class Reaction(SQLModel, table=True):
    """One user's reaction to a message.

    The composite key allows a user at most one reaction per emoji per
    message.
    """

    __tablename__ = "reactions"

    message_id: str = Field(primary_key=True)
    emoji_code: str = Field(primary_key=True, max_length=MAX_EMOJI_CODE_LENGTH)
    user_id: str = Field(primary_key=True)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ReactionCount(SQLModel, table=True):
    """Cached number of reactions for a (message, emoji) pair."""

    __tablename__ = "reaction_counts"

    message_id: str = Field(primary_key=True)
    emoji_code: str = Field(primary_key=True, max_length=MAX_EMOJI_CODE_LENGTH)
    count: int = Field(default=0)
