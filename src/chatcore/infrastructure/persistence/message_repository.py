"""SQL implementation of MessageRepository."""

from datetime import datetime

from sqlalchemy import delete, func, update
from sqlalchemy.orm import aliased
from sqlmodel import select

from chatcore.domain.entities.aggregates import ThreadSummary
from chatcore.domain.entities.message import Message
from chatcore.domain.entities.reaction import Reaction, ReactionCount
from chatcore.infrastructure.persistence.database import Database


class SqlMessageRepository:
    """SQL implementation of MessageRepository.

    Uses SQLModel over the async engine. Thread aggregates live on the root
    message row (`reply_count`, `last_reply_at`).
    """

    def __init__(self, database: Database) -> None:
        """Initialize the repository.

        Args:
            database: Database instance for session management.
        """
        self._database = database

    async def insert_message(self, message: Message) -> Message:
        """Persist a new, already sequenced message.

        Args:
            message: The message to insert.

        Returns:
            The persisted message.

        Raises:
            ConflictError: If another message already holds the sequence.
        """
        async with self._database.get_session() as session:
            session.add(message)
            await session.flush()
        return message

    async def get_by_id(self, message_id: str) -> Message | None:
        async with self._database.get_session() as session:
            return await session.get(Message, message_id)

    async def update_body(
        self, message_id: str, body: str, edited_at: datetime
    ) -> Message | None:
        async with self._database.get_session() as session:
            message = await session.get(Message, message_id)
            if message is None:
                return None
            message.body = body
            message.edited_at = edited_at
            session.add(message)
            await session.flush()
            return message

    async def delete_message(self, message_id: str) -> list[str]:
        """Delete a message, its reactions and, for a thread root, its replies.

        Everything goes in one transaction. Thread aggregates are not touched
        here; the caller recounts the thread of a deleted reply.

        Args:
            message_id: The message to delete.

        Returns:
            IDs of the deleted messages, the given one first; empty if it
            did not exist.
        """
        async with self._database.get_session() as session:
            message = await session.get(Message, message_id)
            if message is None:
                return []
            deleted_ids = [message_id]
            if message.parent_id is None:
                replies = await session.execute(
                    select(Message.id)
                    .where(Message.parent_id == message_id)
                    .order_by(Message.sequence.asc())  # type: ignore[attr-defined]
                )
                deleted_ids.extend(replies.scalars().all())

            await session.execute(
                delete(Reaction).where(
                    Reaction.message_id.in_(deleted_ids)  # type: ignore[attr-defined]
                )
            )
            await session.execute(
                delete(ReactionCount).where(
                    ReactionCount.message_id.in_(deleted_ids)  # type: ignore[attr-defined]
                )
            )
            await session.execute(
                delete(Message)
                .where(Message.id.in_(deleted_ids))  # type: ignore[attr-defined]
                .execution_options(synchronize_session=False)
            )
            return deleted_ids

    async def fetch_messages_since(
        self,
        channel_id: str,
        after: int,
        until: int | None = None,
        limit: int = 200,
    ) -> list[Message]:
        """Get messages with `after < sequence <= until`, ascending by sequence.

        Args:
            channel_id: The channel ID.
            after: Exclusive lower sequence bound.
            until: Inclusive upper sequence bound, or None for no bound.
            limit: Maximum number of messages to return.

        Returns:
            List of messages, replies included.
        """
        async with self._database.get_session() as session:
            statement = (
                select(Message)
                .where(Message.channel_id == channel_id)
                .where(Message.sequence > after)
            )
            if until is not None:
                statement = statement.where(Message.sequence <= until)
            statement = statement.order_by(Message.sequence.asc()).limit(  # type: ignore[attr-defined]
                limit
            )
            result = await session.execute(statement)
            return list(result.scalars().all())

    async def get_thread_replies(self, root_id: str) -> list[Message]:
        async with self._database.get_session() as session:
            statement = (
                select(Message)
                .where(Message.parent_id == root_id)
                .order_by(Message.sequence.asc())  # type: ignore[attr-defined]
            )
            result = await session.execute(statement)
            return list(result.scalars().all())

    async def refresh_thread(self, root_id: str) -> ThreadSummary | None:
        """Atomically set a thread aggregate from its reply rows.

        A single `UPDATE ... RETURNING` with subqueries over the replies, so
        a reply committed before the call is always counted exactly once.

        Args:
            root_id: The thread root message ID.

        Returns:
            The updated aggregate, or None if the root does not exist.
        """
        reply = aliased(Message)
        reply_count = (
            select(func.count())
            .select_from(reply)
            .where(reply.parent_id == root_id)
            .scalar_subquery()
        )
        last_reply_at = (
            select(func.max(reply.created_at))
            .where(reply.parent_id == root_id)
            .scalar_subquery()
        )
        async with self._database.get_session() as session:
            result = await session.execute(
                update(Message)
                .where(Message.id == root_id)  # type: ignore[arg-type]
                .values(reply_count=reply_count, last_reply_at=last_reply_at)
                .returning(Message.reply_count, Message.last_reply_at)  # type: ignore[arg-type]
                .execution_options(synchronize_session=False)
            )
            row = result.one_or_none()
            if row is None:
                return None
            return ThreadSummary(
                root_id=root_id, reply_count=row[0], last_reply_at=row[1]
            )

    async def find_mismatched_threads(self) -> list[str]:
        """Compare every cached thread aggregate with its reply rows.

        Returns:
            IDs of roots whose `reply_count` or `last_reply_at` is wrong.
        """
        async with self._database.get_session() as session:
            result = await session.execute(
                select(
                    Message.parent_id, func.count(), func.max(Message.created_at)
                )
                .where(Message.parent_id.is_not(None))  # type: ignore[union-attr]
                .group_by(Message.parent_id)
            )
            actual = {row[0]: (row[1], row[2]) for row in result.all()}

            roots = await session.execute(
                select(Message.id, Message.reply_count, Message.last_reply_at).where(
                    (Message.reply_count != 0)
                    | (Message.id.in_(list(actual)))  # type: ignore[attr-defined]
                )
            )
            return [
                root_id
                for root_id, reply_count, last_reply_at in roots.all()
                if (reply_count, last_reply_at) != actual.get(root_id, (0, None))
            ]
