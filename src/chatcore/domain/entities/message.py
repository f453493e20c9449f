"""Message entity for channel message persistence."""

from datetime import datetime, timezone
from typing import Any

import ulid
from sqlalchemy import Index, UniqueConstraint
from sqlmodel import Field, SQLModel


class Message(SQLModel, table=True):
    """Channel message entity.

    Thread replies are ordinary channel messages with `parent_id` set; they
    share the channel's sequence space. The thread aggregate for a root
    message is cached on the root row itself.

    Attributes:
        id: ULID of the message.
        channel_id: Channel the message was posted to.
        author_id: User who posted the message.
        body: Message content.
        sequence: Per-channel sequence number.
        parent_id: Thread root message ID for replies.
        reply_count: Number of replies (thread roots only).
        last_reply_at: Time of the latest reply (thread roots only).
        created_at: Record creation time.
        edited_at: Time of the latest body edit, if any.
    """

    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("channel_id", "sequence", name="uq_channel_sequence"),
        Index("idx_thread_parent", "parent_id", "created_at"),
    )

    id: str = Field(default_factory=lambda: str(ulid.new()), primary_key=True)
    channel_id: str = Field(index=True)
    author_id: str = Field(index=True)
    body: str
    sequence: int
    parent_id: str | None = Field(default=None)
    reply_count: int = Field(default=0)
    last_reply_at: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    edited_at: datetime | None = None

    @property
    def is_reply(self) -> bool:
        """Return True if the message belongs to a thread."""
        return self.parent_id is not None

    def to_payload(self) -> dict[str, Any]:
        """Return the JSON-ready representation used on the wire."""
        return self.model_dump(mode="json")
