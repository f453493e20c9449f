"""Realtime events pushed to connected clients."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

import ulid
from pydantic import BaseModel, Field

from chatcore.domain.entities.aggregates import ReactionSummary, ThreadSummary
from chatcore.domain.entities.message import Message


class EventType(str, Enum):
    """Event type enumeration."""

    MESSAGE = "message"
    MESSAGE_UPDATED = "message_updated"
    MESSAGE_DELETED = "message_deleted"
    REACTION = "reaction"
    THREAD_UPDATED = "thread_updated"
    TYPING = "typing"
    PRESENCE = "presence"
    SUBSCRIBED = "subscribed"
    UNSUBSCRIBED = "unsubscribed"
    ERROR = "error"
    PONG = "pong"


class RealtimeEvent(BaseModel):
    """Structured record delivered over a connection.

    Only `message` events carry a sequence number; every other type is
    ephemeral and outside gap detection.
    """

    id: str = Field(default_factory=lambda: str(ulid.new()))
    type: EventType
    channel_id: str | None = None
    sequence: int | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_wire(self) -> dict[str, Any]:
        """Return the JSON-ready representation of the event."""
        return self.model_dump(mode="json")


def message_event(message: Message) -> RealtimeEvent:
    """Build the event announcing a persisted message."""
    return RealtimeEvent(
        type=EventType.MESSAGE,
        channel_id=message.channel_id,
        sequence=message.sequence,
        payload=message.to_payload(),
    )


def message_updated_event(message: Message) -> RealtimeEvent:
    """Build the event announcing an edited message.

    The message keeps its sequence number; the event itself has none.
    """
    return RealtimeEvent(
        type=EventType.MESSAGE_UPDATED,
        channel_id=message.channel_id,
        payload=message.to_payload(),
    )


def message_deleted_event(message: Message, deleted_ids: list[str]) -> RealtimeEvent:
    """Build the event announcing a deleted message and its removed replies."""
    return RealtimeEvent(
        type=EventType.MESSAGE_DELETED,
        channel_id=message.channel_id,
        payload={
            "id": message.id,
            "parent_id": message.parent_id,
            "deleted_ids": deleted_ids,
        },
    )


def reaction_event(channel_id: str, summary: ReactionSummary) -> RealtimeEvent:
    """Build the event announcing a changed reaction aggregate."""
    return RealtimeEvent(
        type=EventType.REACTION,
        channel_id=channel_id,
        payload=summary.model_dump(mode="json", exclude={"changed"}),
    )


def thread_event(channel_id: str, summary: ThreadSummary) -> RealtimeEvent:
    """Build the event announcing a changed thread aggregate."""
    return RealtimeEvent(
        type=EventType.THREAD_UPDATED,
        channel_id=channel_id,
        payload=summary.model_dump(mode="json"),
    )


def typing_event(channel_id: str, user_id: str) -> RealtimeEvent:
    """Build a typing indicator event."""
    return RealtimeEvent(
        type=EventType.TYPING,
        channel_id=channel_id,
        payload={"user_id": user_id},
    )


def presence_event(channel_id: str, user_id: str, online: bool) -> RealtimeEvent:
    """Build a presence change event."""
    return RealtimeEvent(
        type=EventType.PRESENCE,
        channel_id=channel_id,
        payload={"user_id": user_id, "online": online},
    )


def error_event(message: str, channel_id: str | None = None) -> RealtimeEvent:
    """Build an error event reported back to a single connection."""
    return RealtimeEvent(
        type=EventType.ERROR,
        channel_id=channel_id,
        payload={"error": message},
    )
