"""SQL implementation of ReactionRepository."""

from collections import defaultdict
from typing import Any

from sqlalchemy import delete, func, update
from sqlmodel import select

from chatcore.domain.entities.aggregates import ReactionSummary
from chatcore.domain.entities.reaction import Reaction, ReactionCount
from chatcore.infrastructure.persistence.database import Database


class SqlReactionRepository:
    """SQL implementation of ReactionRepository.

    `reactions` rows are the source of truth; `reaction_counts` is the cache
    that the aggregator keeps in step and that repairs rebuild.
    """

    def __init__(self, database: Database) -> None:
        self._database = database

    async def add_reaction(
        self, message_id: str, emoji_code: str, user_id: str
    ) -> bool:
        async with self._database.get_session() as session:
            existing = await session.get(Reaction, (message_id, emoji_code, user_id))
            if existing is not None:
                return False
            session.add(
                Reaction(message_id=message_id, emoji_code=emoji_code, user_id=user_id)
            )
            return True

    async def remove_reaction(
        self, message_id: str, emoji_code: str, user_id: str
    ) -> bool:
        async with self._database.get_session() as session:
            result: Any = await session.execute(
                delete(Reaction)
                .where(Reaction.message_id == message_id)  # type: ignore[arg-type]
                .where(Reaction.emoji_code == emoji_code)  # type: ignore[arg-type]
                .where(Reaction.user_id == user_id)  # type: ignore[arg-type]
            )
            return result.rowcount > 0

    async def adjust_count(self, message_id: str, emoji_code: str, delta: int) -> int:
        """Atomically add `delta` to a reaction count.

        Args:
            message_id: The reacted message.
            emoji_code: The emoji code.
            delta: +1 or -1.

        Returns:
            The new count.
        """
        async with self._database.get_session() as session:
            result = await session.execute(
                update(ReactionCount)
                .where(ReactionCount.message_id == message_id)  # type: ignore[arg-type]
                .where(ReactionCount.emoji_code == emoji_code)  # type: ignore[arg-type]
                .values(count=ReactionCount.count + delta)
                .returning(ReactionCount.count)  # type: ignore[arg-type]
                .execution_options(synchronize_session=False)
            )
            value = result.scalar_one_or_none()
            if value is not None:
                return int(value)

            initial = max(delta, 0)
            session.add(
                ReactionCount(
                    message_id=message_id, emoji_code=emoji_code, count=initial
                )
            )
            return initial

    async def get_summary(self, message_id: str, emoji_code: str) -> ReactionSummary:
        async with self._database.get_session() as session:
            counter = await session.get(ReactionCount, (message_id, emoji_code))
            result = await session.execute(
                select(Reaction.user_id)
                .where(Reaction.message_id == message_id)
                .where(Reaction.emoji_code == emoji_code)
                .order_by(Reaction.user_id)
            )
            return ReactionSummary(
                message_id=message_id,
                emoji_code=emoji_code,
                count=counter.count if counter is not None else 0,
                user_ids=list(result.scalars().all()),
            )

    async def list_for_message(self, message_id: str) -> list[ReactionSummary]:
        async with self._database.get_session() as session:
            counters = await session.execute(
                select(ReactionCount)
                .where(ReactionCount.message_id == message_id)
                .where(ReactionCount.count > 0)
                .order_by(ReactionCount.emoji_code)
            )
            users = await self._users_by_emoji(session, message_id)
            return [
                ReactionSummary(
                    message_id=message_id,
                    emoji_code=counter.emoji_code,
                    count=counter.count,
                    user_ids=users.get(counter.emoji_code, []),
                )
                for counter in counters.scalars().all()
            ]

    async def recompute(self, message_id: str, emoji_code: str) -> ReactionSummary:
        """Rebuild the aggregate of one (message, emoji) pair from reaction rows.

        Args:
            message_id: The reacted message.
            emoji_code: The emoji code.

        Returns:
            The rebuilt aggregate.
        """
        async with self._database.get_session() as session:
            result = await session.execute(
                select(Reaction.user_id)
                .where(Reaction.message_id == message_id)
                .where(Reaction.emoji_code == emoji_code)
                .order_by(Reaction.user_id)
            )
            user_ids = list(result.scalars().all())

            counter = await session.get(ReactionCount, (message_id, emoji_code))
            if counter is None:
                counter = ReactionCount(message_id=message_id, emoji_code=emoji_code)
            counter.count = len(user_ids)
            session.add(counter)
            return ReactionSummary(
                message_id=message_id,
                emoji_code=emoji_code,
                count=len(user_ids),
                user_ids=user_ids,
            )

    async def find_mismatched(self) -> list[tuple[str, str]]:
        """Compare every cached reaction count with the reaction rows.

        Returns:
            (message_id, emoji_code) pairs whose cached count is wrong,
            sorted.
        """
        async with self._database.get_session() as session:
            rows = await session.execute(
                select(Reaction.message_id, Reaction.emoji_code, func.count()).group_by(
                    Reaction.message_id, Reaction.emoji_code
                )
            )
            actual = {(row[0], row[1]): row[2] for row in rows.all()}

            counters = await session.execute(select(ReactionCount))
            cached = {
                (c.message_id, c.emoji_code): c.count for c in counters.scalars().all()
            }

            return sorted(
                key
                for key in set(actual) | set(cached)
                if actual.get(key, 0) != cached.get(key, 0)
            )

    async def _users_by_emoji(
        self, session: Any, message_id: str
    ) -> dict[str, list[str]]:
        result = await session.execute(
            select(Reaction.emoji_code, Reaction.user_id)
            .where(Reaction.message_id == message_id)
            .order_by(Reaction.emoji_code, Reaction.user_id)
        )
        users: dict[str, list[str]] = defaultdict(list)
        for emoji_code, user_id in result.all():
            users[emoji_code].append(user_id)
        return dict(users)
