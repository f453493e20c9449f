"""Domain entities."""

from chatcore.domain.entities.aggregates import (
    ReactionOp,
    ReactionSummary,
    ThreadSummary,
)
from chatcore.domain.entities.channel import Channel, ChannelMember, ChannelSequence
from chatcore.domain.entities.event import EventType, RealtimeEvent
from chatcore.domain.entities.message import Message
from chatcore.domain.entities.reaction import Reaction, ReactionCount
from chatcore.domain.entities.repair import RepairKind, RepairTask

__all__ = [
    "Channel",
    "ChannelMember",
    "ChannelSequence",
    "EventType",
    "Message",
    "Reaction",
    "ReactionCount",
    "ReactionOp",
    "ReactionSummary",
    "RealtimeEvent",
    "RepairKind",
    "RepairTask",
    "ThreadSummary",
]
