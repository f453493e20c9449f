"""MessageRepository protocol."""

from datetime import datetime
from typing import Protocol

from chatcore.domain.entities.aggregates import ThreadSummary
from chatcore.domain.entities.message import Message


class MessageRepository(Protocol):
    """Repository protocol for channel messages and thread aggregates."""

    async def insert_message(self, message: Message) -> Message:
        """Persist a new, already sequenced message.

        Raises:
            ConflictError: If the (channel_id, sequence) pair is taken.
        """
        ...

    async def get_by_id(self, message_id: str) -> Message | None:
        """Get a message by ID, or None if it does not exist."""
        ...

    async def update_body(
        self, message_id: str, body: str, edited_at: datetime
    ) -> Message | None:
        """Replace a message body. Returns None if the message does not exist."""
        ...

    async def delete_message(self, message_id: str) -> list[str]:
        """Delete a message with its reactions.

        Deleting a thread root deletes its replies too.

        Returns:
            IDs of the deleted messages, the given one first; empty if it
            did not exist.
        """
        ...

    async def fetch_messages_since(
        self,
        channel_id: str,
        after: int,
        until: int | None = None,
        limit: int = 200,
    ) -> list[Message]:
        """Get messages with `after < sequence <= until`, ascending by sequence.

        Thread replies are included; they are part of the channel sequence.
        """
        ...

    async def get_thread_replies(self, root_id: str) -> list[Message]:
        """Get the replies of a thread, oldest first."""
        ...

    async def refresh_thread(self, root_id: str) -> ThreadSummary | None:
        """Atomically set a thread aggregate from its reply rows.

        Used both after each persisted reply and by repairs; the result is
        the same whatever order concurrent calls run in.

        Returns:
            The updated aggregate, or None if the root does not exist.
        """
        ...

    async def find_mismatched_threads(self) -> list[str]:
        """Return the IDs of thread roots whose cached aggregate is wrong."""
        ...
