"""SQL implementation of ChannelRepository."""

from typing import Any

from sqlalchemy import delete, update
from sqlmodel import select

from chatcore.domain.entities.channel import Channel, ChannelMember, ChannelSequence
from chatcore.infrastructure.persistence.database import Database


class SqlChannelRepository:
    """SQL implementation of ChannelRepository.

    The sequence counter is a single row per channel advanced with an atomic
    `UPDATE ... RETURNING`, so concurrent writers never observe the same
    value.
    """

    def __init__(self, database: Database) -> None:
        self._database = database

    async def create_channel(self, channel: Channel, creator_id: str) -> Channel:
        async with self._database.get_session() as session:
            session.add(channel)
            session.add(ChannelMember(channel_id=channel.id, user_id=creator_id))
            session.add(ChannelSequence(channel_id=channel.id, last_sequence=0))
        return channel

    async def get_by_id(self, channel_id: str) -> Channel | None:
        async with self._database.get_session() as session:
            return await session.get(Channel, channel_id)

    async def add_member(self, channel_id: str, user_id: str) -> bool:
        async with self._database.get_session() as session:
            existing = await session.get(ChannelMember, (channel_id, user_id))
            if existing is not None:
                return False
            session.add(ChannelMember(channel_id=channel_id, user_id=user_id))
            return True

    async def remove_member(self, channel_id: str, user_id: str) -> bool:
        async with self._database.get_session() as session:
            result: Any = await session.execute(
                delete(ChannelMember)
                .where(ChannelMember.channel_id == channel_id)  # type: ignore[arg-type]
                .where(ChannelMember.user_id == user_id)  # type: ignore[arg-type]
            )
            return result.rowcount > 0

    async def is_member(self, channel_id: str, user_id: str) -> bool:
        async with self._database.get_session() as session:
            member = await session.get(ChannelMember, (channel_id, user_id))
            return member is not None

    async def list_members(self, channel_id: str) -> list[ChannelMember]:
        async with self._database.get_session() as session:
            result = await session.execute(
                select(ChannelMember)
                .where(ChannelMember.channel_id == channel_id)
                .order_by(
                    ChannelMember.joined_at.asc(),  # type: ignore[attr-defined]
                    ChannelMember.user_id,
                )
            )
            return list(result.scalars().all())

    async def list_for_user(self, user_id: str) -> list[Channel]:
        async with self._database.get_session() as session:
            statement = (
                select(Channel)
                .join(
                    ChannelMember,
                    ChannelMember.channel_id == Channel.id,  # type: ignore[arg-type]
                )
                .where(ChannelMember.user_id == user_id)
                .order_by(Channel.name)
            )
            result = await session.execute(statement)
            return list(result.scalars().all())

    async def next_sequence(self, channel_id: str) -> int:
        """Atomically increment and return the channel's sequence counter.

        The increment commits on its own, independently of the message that
        will carry the number.

        Args:
            channel_id: The channel ID.

        Returns:
            The newly issued sequence number (1 for a fresh channel).
        """
        async with self._database.get_session() as session:
            result = await session.execute(
                update(ChannelSequence)
                .where(ChannelSequence.channel_id == channel_id)  # type: ignore[arg-type]
                .values(last_sequence=ChannelSequence.last_sequence + 1)
                .returning(ChannelSequence.last_sequence)  # type: ignore[arg-type]
                .execution_options(synchronize_session=False)
            )
            value = result.scalar_one_or_none()
            if value is not None:
                return int(value)

            # Counter rows are created with the channel; this covers channels
            # created before the counter existed. A concurrent creator in
            # another process surfaces as ConflictError on commit.
            session.add(ChannelSequence(channel_id=channel_id, last_sequence=1))
            return 1

    async def current_sequence(self, channel_id: str) -> int:
        async with self._database.get_session() as session:
            counter = await session.get(ChannelSequence, channel_id)
            return counter.last_sequence if counter is not None else 0
