"""ChannelRepository protocol."""

from typing import Protocol

from chatcore.domain.entities.channel import Channel, ChannelMember


class ChannelAccess(Protocol):
    """Read-authorization check consulted by the connection registry."""

    async def is_member(self, channel_id: str, user_id: str) -> bool:
        """Return True if the user may read the channel."""
        ...


class ChannelRepository(ChannelAccess, Protocol):
    """Repository protocol for channels, memberships and sequence counters."""

    async def create_channel(self, channel: Channel, creator_id: str) -> Channel:
        """Persist a channel and make its creator a member."""
        ...

    async def get_by_id(self, channel_id: str) -> Channel | None:
        """Get a channel by ID, or None if it does not exist."""
        ...

    async def add_member(self, channel_id: str, user_id: str) -> bool:
        """Add a member. Returns False if the user already was one."""
        ...

    async def remove_member(self, channel_id: str, user_id: str) -> bool:
        """Remove a member. Returns False if the user was not one."""
        ...

    async def list_members(self, channel_id: str) -> list[ChannelMember]:
        """Get the memberships of a channel, oldest first."""
        ...

    async def list_for_user(self, user_id: str) -> list[Channel]:
        """Get the channels a user belongs to, ordered by name."""
        ...

    async def next_sequence(self, channel_id: str) -> int:
        """Atomically increment and return the channel's sequence counter."""
        ...

    async def current_sequence(self, channel_id: str) -> int:
        """Return the last sequence issued for a channel (0 if none)."""
        ...
