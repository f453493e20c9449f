"""Repository protocols."""

from chatcore.domain.repositories.channel_repository import (
    ChannelAccess,
    ChannelRepository,
)
from chatcore.domain.repositories.message_repository import MessageRepository
from chatcore.domain.repositories.reaction_repository import ReactionRepository

__all__ = [
    "ChannelAccess",
    "ChannelRepository",
    "MessageRepository",
    "ReactionRepository",
]
