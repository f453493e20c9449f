"""Persistence infrastructure."""

from chatcore.infrastructure.persistence.channel_repository import SqlChannelRepository
from chatcore.infrastructure.persistence.database import Database
from chatcore.infrastructure.persistence.message_repository import SqlMessageRepository
from chatcore.infrastructure.persistence.reaction_repository import (
    SqlReactionRepository,
)

__all__ = [
    "Database",
    "SqlChannelRepository",
    "SqlMessageRepository",
    "SqlReactionRepository",
]
