"""Persist-then-broadcast messaging service."""

from datetime import datetime, timezone

from structlog.stdlib import BoundLogger

from chatcore.application.services.aggregator import ReactionThreadAggregator
from chatcore.application.services.connection_registry import (
    Connection,
    ConnectionRegistry,
)
from chatcore.application.services.fanout import FanoutRouter
from chatcore.application.services.sequencer import MessageSequencer
from chatcore.domain.entities.aggregates import (
    ReactionOp,
    ReactionSummary,
    ThreadSummary,
)
from chatcore.domain.entities.channel import Channel, ChannelMember
from chatcore.domain.entities.event import (
    message_deleted_event,
    message_event,
    message_updated_event,
    presence_event,
    reaction_event,
    thread_event,
    typing_event,
)
from chatcore.domain.entities.message import Message
from chatcore.domain.errors import ForbiddenError, NotFoundError, TransientStoreError
from chatcore.domain.repositories.channel_repository import ChannelRepository
from chatcore.domain.repositories.message_repository import MessageRepository
from chatcore.infrastructure.keyed_lock import KeyedLock
from chatcore.infrastructure.retry import retry_once

MAX_BODY_LENGTH = 40_000
MAX_CHANNEL_NAME_LENGTH = 100


def _validate_body(body: str) -> None:
    if not body.strip():
        raise ValueError("body must not be empty")
    if len(body) > MAX_BODY_LENGTH:
        raise ValueError(f"body must be at most {MAX_BODY_LENGTH} characters")


class MessagingService:
    """Application service behind the REST and WebSocket surfaces.

    Sending a message reserves a sequence number, persists the message and
    publishes it while holding the channel's lock, so the publish order of a
    channel is its sequence order.

    Args:
        channels: Channel repository.
        messages: Message repository.
        registry: Connection registry.
        sequencer: Message sequencer.
        aggregator: Reaction/thread aggregator.
        router: Fan-out router.
        logger: Structured logger.
        history_page_size: Default and maximum page size of history reads.
    """

    def __init__(
        self,
        channels: ChannelRepository,
        messages: MessageRepository,
        registry: ConnectionRegistry,
        sequencer: MessageSequencer,
        aggregator: ReactionThreadAggregator,
        router: FanoutRouter,
        logger: BoundLogger,
        history_page_size: int = 200,
    ) -> None:
        self._channels = channels
        self._messages = messages
        self._registry = registry
        self._sequencer = sequencer
        self._aggregator = aggregator
        self._router = router
        self._logger = logger
        self._history_page_size = history_page_size
        self._channel_locks = KeyedLock()

    async def create_channel(
        self, name: str, creator_id: str, topic: str | None = None
    ) -> Channel:
        """Create a channel whose first member is its creator.

        Raises:
            ValueError: If the name is empty or too long.
        """
        name = name.strip()
        if not name or len(name) > MAX_CHANNEL_NAME_LENGTH:
            raise ValueError(
                f"name must be 1 to {MAX_CHANNEL_NAME_LENGTH} characters"
            )
        channel = await self._channels.create_channel(
            Channel(name=name, topic=topic), creator_id
        )
        self._logger.info(
            "Channel created", channel_id=channel.id, creator_id=creator_id
        )
        return channel

    async def channels_for(self, user_id: str) -> list[Channel]:
        return await self._channels.list_for_user(user_id)

    async def add_member(self, channel_id: str, user_id: str, added_by: str) -> bool:
        """Add a member to a channel on behalf of an existing member.

        Returns:
            False if the user already was a member.
        """
        await self._require_member(channel_id, added_by)
        return await self._channels.add_member(channel_id, user_id)

    async def members(self, channel_id: str, user_id: str) -> list[ChannelMember]:
        """List a channel's members on behalf of one of them."""
        await self._require_member(channel_id, user_id)
        return await self._channels.list_members(channel_id)

    async def remove_member(
        self, channel_id: str, user_id: str, removed_by: str
    ) -> bool:
        """Remove a member and cut their live subscriptions to the channel.

        Returns:
            False if the user was not a member.
        """
        await self._require_member(channel_id, removed_by)
        removed = await self._channels.remove_member(channel_id, user_id)
        if removed:
            self._registry.unsubscribe_user(channel_id, user_id)
        return removed

    async def send_message(
        self,
        channel_id: str,
        author_id: str,
        body: str,
        parent_id: str | None = None,
    ) -> Message:
        """Persist a message, then deliver it to the channel's subscribers.

        Args:
            channel_id: Target channel.
            author_id: Authenticated author.
            body: Message content.
            parent_id: Thread root when the message is a reply.

        Returns:
            The persisted message with its sequence number.

        Raises:
            ValueError: If the body is empty or too long, or the parent is in
                another channel or is itself a reply.
            ForbiddenError: If the author is not a channel member.
            NotFoundError: If the parent message does not exist.
            TransientStoreError: If the store failed twice. The message was
                not persisted, though its sequence number may be consumed.
        """
        _validate_body(body)
        await self._require_member(channel_id, author_id)

        async with self._channel_locks.hold(channel_id):
            # Checked under the lock so the root cannot be deleted meanwhile.
            if parent_id is not None:
                await self._require_thread_root(channel_id, parent_id)
            sequence = await self._sequencer.next_sequence(channel_id)
            message = Message(
                channel_id=channel_id,
                author_id=author_id,
                body=body,
                sequence=sequence,
                parent_id=parent_id,
            )
            try:
                await retry_once(
                    lambda: self._messages.insert_message(message),
                    self._logger,
                    "insert_message",
                )
            except Exception as e:
                self._sequencer.record_consumed(channel_id, sequence, reason=str(e))
                raise

            delivered = self._router.publish(channel_id, message_event(message))

            if parent_id is not None:
                await self._update_thread(channel_id, parent_id)

        self._logger.info(
            "Message sent",
            message_id=message.id,
            channel_id=channel_id,
            sequence=sequence,
            parent_id=parent_id,
            delivered=delivered,
        )
        return message

    async def edit_message(self, message_id: str, user_id: str, body: str) -> Message:
        """Replace a message body and announce the edit.

        The message keeps its sequence number; the `message_updated` event is
        ephemeral.

        Raises:
            ValueError: If the body is empty or too long.
            NotFoundError: If the message does not exist.
            ForbiddenError: If the user is not the author or no longer a member.
            TransientStoreError: If the store failed twice.
        """
        _validate_body(body)
        message = await self._require_author(message_id, user_id)

        async with self._channel_locks.hold(message.channel_id):
            updated = await retry_once(
                lambda: self._messages.update_body(
                    message_id, body, datetime.now(timezone.utc)
                ),
                self._logger,
                "update_body",
            )
            if updated is None:
                raise NotFoundError(f"Message not found: {message_id}")
            delivered = self._router.publish(
                message.channel_id, message_updated_event(updated)
            )

        self._logger.info(
            "Message edited",
            message_id=message_id,
            channel_id=message.channel_id,
            delivered=delivered,
        )
        return updated

    async def delete_message(self, message_id: str, user_id: str) -> list[str]:
        """Delete a message and announce it.

        Deleting a thread root deletes its replies. Deleting a reply recounts
        its thread and announces the new aggregate. Sequence numbers of
        deleted messages are not reused.

        Returns:
            IDs of the deleted messages, the given one first.

        Raises:
            NotFoundError: If the message does not exist.
            ForbiddenError: If the user is not the author or no longer a member.
            TransientStoreError: If the delete failed twice.
        """
        message = await self._require_author(message_id, user_id)
        channel_id = message.channel_id

        async with self._channel_locks.hold(channel_id):
            summary: ThreadSummary | None = None
            if message.parent_id is None:
                deleted_ids = await retry_once(
                    lambda: self._messages.delete_message(message_id),
                    self._logger,
                    "delete_message",
                )
                if not deleted_ids:
                    raise NotFoundError(f"Message not found: {message_id}")
            else:
                deleted_ids = [message_id]
                summary = await self._aggregator.remove_thread_reply(
                    message.parent_id, message_id
                )

            self._router.publish(
                channel_id, message_deleted_event(message, deleted_ids)
            )
            if summary is not None:
                self._router.publish(channel_id, thread_event(channel_id, summary))

        self._logger.info(
            "Message deleted",
            message_id=message_id,
            channel_id=channel_id,
            deleted=len(deleted_ids),
        )
        return deleted_ids

    async def _update_thread(self, channel_id: str, root_id: str) -> None:
        try:
            summary = await self._aggregator.increment_thread_reply(root_id)
        except TransientStoreError as e:
            # The reply is committed; the queued repair will fix the count.
            self._logger.warning(
                "Thread aggregate update deferred", root_id=root_id, error=str(e)
            )
            return
        self._router.publish(channel_id, thread_event(channel_id, summary))

    async def react(
        self,
        message_id: str,
        emoji_code: str,
        user_id: str,
        op: ReactionOp,
    ) -> ReactionSummary:
        """Add or remove a reaction and announce a changed aggregate.

        Raises:
            NotFoundError: If the message does not exist.
            ForbiddenError: If the user is not a member of the message's channel.
            ValueError: If the emoji code is invalid.
            TransientStoreError: If the store failed twice.
        """
        message = await self.get_message(message_id, user_id)
        summary = await self._aggregator.apply_reaction(
            message_id, emoji_code, user_id, op
        )
        if summary.changed:
            self._router.publish(
                message.channel_id, reaction_event(message.channel_id, summary)
            )
        return summary

    async def reactions(self, message_id: str, user_id: str) -> list[ReactionSummary]:
        await self.get_message(message_id, user_id)
        return await self._aggregator.reactions_for(message_id)

    async def get_message(self, message_id: str, user_id: str) -> Message:
        """Get a message the user may read.

        Raises:
            NotFoundError: If the message does not exist.
            ForbiddenError: If the user is not a member of its channel.
        """
        message = await self._messages.get_by_id(message_id)
        if message is None:
            raise NotFoundError(f"Message not found: {message_id}")
        await self._require_member(message.channel_id, user_id)
        return message

    async def thread_replies(self, root_id: str, user_id: str) -> list[Message]:
        await self.get_message(root_id, user_id)
        return await self._messages.get_thread_replies(root_id)

    async def history(
        self,
        channel_id: str,
        user_id: str,
        after: int = 0,
        until: int | None = None,
        limit: int | None = None,
    ) -> list[Message]:
        """Read channel messages by sequence range, for sync and backfill.

        Args:
            channel_id: The channel.
            user_id: The reader.
            after: Exclusive lower sequence bound.
            until: Inclusive upper sequence bound.
            limit: Page size, capped at the configured maximum.

        Returns:
            Messages with `after < sequence <= until`, ascending.

        Raises:
            ForbiddenError: If the user is not a channel member.
            ValueError: If the bounds are negative or inverted.
        """
        if after < 0 or (until is not None and until < after):
            raise ValueError("invalid sequence range")
        if limit is None:
            limit = self._history_page_size
        page_size = min(limit, self._history_page_size)
        if page_size <= 0:
            raise ValueError("limit must be positive")
        await self._require_member(channel_id, user_id)
        return await self._messages.fetch_messages_since(
            channel_id, after, until=until, limit=page_size
        )

    async def subscribe(self, connection: Connection, channel_id: str) -> bool:
        """Subscribe a connection and announce its user's presence."""
        subscribed = await self._registry.subscribe(connection.id, channel_id)
        if subscribed and connection.user_id is not None:
            self._router.publish(
                channel_id,
                presence_event(channel_id, connection.user_id, online=True),
                exclude_connection_id=connection.id,
            )
        return subscribed

    def typing(self, connection: Connection, channel_id: str) -> int:
        """Relay a typing indicator to the channel, skipping its sender.

        Raises:
            ForbiddenError: If the connection is not subscribed to the channel.
        """
        if channel_id not in connection.channels or connection.user_id is None:
            raise ForbiddenError(f"Not subscribed to channel {channel_id}")
        return self._router.publish(
            channel_id,
            typing_event(channel_id, connection.user_id),
            exclude_connection_id=connection.id,
        )

    async def disconnect(self, connection: Connection) -> None:
        """Deregister a connection and announce presence loss if it was the last."""
        channels = set(connection.channels)
        await self._registry.deregister(connection.id)
        user_id = connection.user_id
        if user_id is None or self._registry.is_online(user_id):
            return
        for channel_id in channels:
            self._router.publish(
                channel_id, presence_event(channel_id, user_id, online=False)
            )

    async def _require_author(self, message_id: str, user_id: str) -> Message:
        message = await self.get_message(message_id, user_id)
        if message.author_id != user_id:
            raise ForbiddenError(f"Not the author of message {message_id}")
        return message

    async def _require_thread_root(self, channel_id: str, parent_id: str) -> None:
        parent = await self._messages.get_by_id(parent_id)
        if parent is None:
            raise NotFoundError(f"Parent message not found: {parent_id}")
        if parent.channel_id != channel_id:
            raise ValueError("parent message belongs to another channel")
        if parent.is_reply:
            raise ValueError("replies cannot be threaded")

    async def _require_member(self, channel_id: str, user_id: str) -> None:
        if not await self._channels.is_member(channel_id, user_id):
            if await self._channels.get_by_id(channel_id) is None:
                raise NotFoundError(f"Channel not found: {channel_id}")
            raise ForbiddenError(f"Not a member of channel {channel_id}")
