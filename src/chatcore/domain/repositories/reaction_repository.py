"""ReactionRepository protocol."""

from typing import Protocol

from chatcore.domain.entities.aggregates import ReactionSummary


class ReactionRepository(Protocol):
    """Repository protocol for reaction rows and reaction aggregates.

    Row writes and aggregate writes are separate calls so that a failed
    aggregate update can be repaired from rows later.
    """

    async def add_reaction(
        self, message_id: str, emoji_code: str, user_id: str
    ) -> bool:
        """Insert a reaction row.

        Returns:
            True if inserted, False if the user already had this reaction.
        """
        ...

    async def remove_reaction(
        self, message_id: str, emoji_code: str, user_id: str
    ) -> bool:
        """Delete a reaction row.

        Returns:
            True if deleted, False if there was nothing to delete.
        """
        ...

    async def adjust_count(self, message_id: str, emoji_code: str, delta: int) -> int:
        """Atomically add `delta` to a reaction count and return the new count."""
        ...

    async def get_summary(self, message_id: str, emoji_code: str) -> ReactionSummary:
        """Get the aggregate of one (message, emoji) pair."""
        ...

    async def list_for_message(self, message_id: str) -> list[ReactionSummary]:
        """Get every non-empty aggregate of a message, ordered by emoji code."""
        ...

    async def recompute(self, message_id: str, emoji_code: str) -> ReactionSummary:
        """Rebuild the aggregate of one (message, emoji) pair from reaction rows."""
        ...

    async def find_mismatched(self) -> list[tuple[str, str]]:
        """Return every (message_id, emoji_code) whose cached count is wrong."""
        ...
