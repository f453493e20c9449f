"""Channel entities: channels, memberships and sequence counters."""

from datetime import datetime, timezone

import ulid
from sqlmodel import Field, SQLModel


class Channel(SQLModel, table=True):
    """A chat channel.

    Attributes:
        id: ULID of the channel.
        name: Display name.
        topic: Optional channel topic.
        created_at: Record creation time.
    """

    __tablename__ = "channels"

    id: str = Field(default_factory=lambda: str(ulid.new()), primary_key=True)
    name: str = Field(max_length=100)
    topic: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ChannelMember(SQLModel, table=True):
    """Membership of a user in a channel; grants read and post access."""

    __tablename__ = "channel_members"

    channel_id: str = Field(primary_key=True)
    user_id: str = Field(primary_key=True, index=True)
    joined_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ChannelSequence(SQLModel, table=True):
    """Last sequence number issued for a channel."""

    __tablename__ = "channel_sequences"

    channel_id: str = Field(primary_key=True)
    last_sequence: int = Field(default=0)
