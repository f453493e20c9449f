"""Reaction and thread aggregate maintenance."""

from structlog.stdlib import BoundLogger

from chatcore.domain.entities.aggregates import (
    ReactionOp,
    ReactionSummary,
    ThreadSummary,
)
from chatcore.domain.entities.reaction import MAX_EMOJI_CODE_LENGTH
from chatcore.domain.entities.repair import RepairKind, RepairTask
from chatcore.domain.errors import ConflictError, NotFoundError, TransientStoreError
from chatcore.domain.repositories.message_repository import MessageRepository
from chatcore.domain.repositories.reaction_repository import ReactionRepository
from chatcore.infrastructure.keyed_lock import KeyedLock
from chatcore.infrastructure.repair_queue import RepairQueue
from chatcore.infrastructure.retry import retry_once


def validate_emoji_code(emoji_code: str) -> str:
    """Return the stripped emoji code.

    Raises:
        ValueError: If the code is empty or too long.
    """
    code = emoji_code.strip()
    if not code:
        raise ValueError("emoji_code must not be empty")
    if len(code) > MAX_EMOJI_CODE_LENGTH:
        raise ValueError(
            f"emoji_code must be at most {MAX_EMOJI_CODE_LENGTH} characters"
        )
    return code


class ReactionThreadAggregator:
    """Keeps reaction counts and thread reply counts consistent with their rows.

    Updates to one aggregate, a (message, emoji) pair or a thread root, are
    serialized by a per-aggregate lock; different aggregates never wait on
    each other. Row writes are idempotent. When the aggregate update after a
    successful row write fails twice, a repair task is queued to recompute
    the aggregate from rows and the caller gets TransientStoreError.

    Args:
        messages: Message repository (thread aggregates).
        reactions: Reaction repository (reaction rows and counts).
        repair_queue: Queue consumed by the repair loop.
        logger: Structured logger.
        repair_delay: Seconds to wait before a queued repair runs.
    """

    def __init__(
        self,
        messages: MessageRepository,
        reactions: ReactionRepository,
        repair_queue: RepairQueue,
        logger: BoundLogger,
        repair_delay: float = 1.0,
    ) -> None:
        self._messages = messages
        self._reactions = reactions
        self._repair_queue = repair_queue
        self._logger = logger
        self._repair_delay = repair_delay
        self._locks = KeyedLock()

    async def apply_reaction(
        self,
        message_id: str,
        emoji_code: str,
        user_id: str,
        op: ReactionOp,
    ) -> ReactionSummary:
        """Add or remove one user's reaction.

        Adding a reaction the user already has, or removing one they do not
        have, changes nothing and returns the current aggregate with
        `changed=False`.

        Args:
            message_id: The reacted message.
            emoji_code: The emoji code.
            user_id: The reacting user.
            op: ReactionOp.ADD or ReactionOp.REMOVE.

        Returns:
            The aggregate after the operation.

        Raises:
            ValueError: If the emoji code is invalid.
            NotFoundError: If the message does not exist.
            TransientStoreError: If the store failed twice; the operation is
                safe to repeat.
        """
        emoji_code = validate_emoji_code(emoji_code)
        if await self._messages.get_by_id(message_id) is None:
            raise NotFoundError(f"Message not found: {message_id}")

        async with self._locks.hold((RepairKind.REACTIONS, message_id, emoji_code)):
            if op is ReactionOp.ADD:
                changed = await retry_once(
                    lambda: self._reactions.add_reaction(
                        message_id, emoji_code, user_id
                    ),
                    self._logger,
                    "add_reaction",
                    retry_on=(TransientStoreError, ConflictError),
                )
                delta = 1
            else:
                changed = await retry_once(
                    lambda: self._reactions.remove_reaction(
                        message_id, emoji_code, user_id
                    ),
                    self._logger,
                    "remove_reaction",
                )
                delta = -1

            if not changed:
                summary = await self._reactions.get_summary(message_id, emoji_code)
                return summary.model_copy(update={"changed": False})

            try:
                await retry_once(
                    lambda: self._reactions.adjust_count(
                        message_id, emoji_code, delta
                    ),
                    self._logger,
                    "adjust_reaction_count",
                )
            except TransientStoreError:
                await self.schedule_repair(
                    RepairKind.REACTIONS, message_id, emoji_code=emoji_code
                )
                raise

            return await self._reactions.get_summary(message_id, emoji_code)

    async def increment_thread_reply(self, root_message_id: str) -> ThreadSummary:
        """Count one newly persisted reply on its thread root.

        Recomputes the aggregate from the reply rows, so repeating the call is
        harmless.

        Args:
            root_message_id: The thread root.

        Returns:
            The updated thread aggregate.

        Raises:
            NotFoundError: If the root does not exist.
            TransientStoreError: If the store failed twice; a repair has been
                queued.
        """
        async with self._locks.hold((RepairKind.THREAD, root_message_id)):
            try:
                summary = await retry_once(
                    lambda: self._messages.refresh_thread(root_message_id),
                    self._logger,
                    "refresh_thread",
                )
            except TransientStoreError:
                await self.schedule_repair(RepairKind.THREAD, root_message_id)
                raise

        if summary is None:
            raise NotFoundError(f"Thread root not found: {root_message_id}")
        return summary

    async def remove_thread_reply(
        self, root_message_id: str, reply_id: str
    ) -> ThreadSummary | None:
        """Delete a reply and recount its thread under the root's lock.

        Args:
            root_message_id: The thread root.
            reply_id: The reply to delete.

        Returns:
            The updated thread aggregate, or None if the recount failed and a
            repair was queued. The reply is deleted either way.

        Raises:
            NotFoundError: If the reply does not exist.
            TransientStoreError: If the delete failed twice; nothing changed.
        """
        async with self._locks.hold((RepairKind.THREAD, root_message_id)):
            deleted = await retry_once(
                lambda: self._messages.delete_message(reply_id),
                self._logger,
                "delete_message",
            )
            if not deleted:
                raise NotFoundError(f"Message not found: {reply_id}")
            try:
                return await retry_once(
                    lambda: self._messages.refresh_thread(root_message_id),
                    self._logger,
                    "refresh_thread",
                )
            except TransientStoreError:
                await self.schedule_repair(RepairKind.THREAD, root_message_id)
                return None

    async def reactions_for(self, message_id: str) -> list[ReactionSummary]:
        """List the reaction aggregates of a message.

        Raises:
            NotFoundError: If the message does not exist.
        """
        if await self._messages.get_by_id(message_id) is None:
            raise NotFoundError(f"Message not found: {message_id}")
        return await self._reactions.list_for_message(message_id)

    async def schedule_repair(
        self, kind: RepairKind, target_id: str, emoji_code: str | None = None
    ) -> None:
        """Queue a recomputation of one aggregate from its rows."""
        task = RepairTask(kind=kind, target_id=target_id, emoji_code=emoji_code)
        self._logger.warning(
            "Aggregate update failed, repair scheduled",
            kind=kind.value,
            target_id=target_id,
            emoji_code=emoji_code,
        )
        await self._repair_queue.enqueue(task, delay=self._repair_delay)

    async def repair(self, task: RepairTask) -> ReactionSummary | ThreadSummary | None:
        """Recompute the aggregate named by a repair task.

        Args:
            task: The repair task.

        Returns:
            The recomputed aggregate, or None if its target no longer exists.
        """
        if task.kind is RepairKind.THREAD:
            async with self._locks.hold((RepairKind.THREAD, task.target_id)):
                summary: ReactionSummary | ThreadSummary | None = (
                    await self._messages.refresh_thread(task.target_id)
                )
        else:
            if task.emoji_code is None:
                raise ValueError("Reaction repair requires an emoji_code")
            async with self._locks.hold(
                (RepairKind.REACTIONS, task.target_id, task.emoji_code)
            ):
                summary = await self._reactions.recompute(
                    task.target_id, task.emoji_code
                )

        self._logger.info(
            "Aggregate repaired",
            kind=task.kind.value,
            target_id=task.target_id,
            emoji_code=task.emoji_code,
        )
        return summary

    async def reconcile_all(self) -> int:
        """Find and repair every aggregate that disagrees with its rows.

        Each mismatch is repaired under its aggregate's lock, so an update in
        flight at detection time is finished before the recomputation.

        Returns:
            Number of aggregates repaired.
        """
        tasks = [
            RepairTask(kind=RepairKind.THREAD, target_id=root_id)
            for root_id in await self._messages.find_mismatched_threads()
        ]
        tasks.extend(
            RepairTask(
                kind=RepairKind.REACTIONS, target_id=message_id, emoji_code=emoji_code
            )
            for message_id, emoji_code in await self._reactions.find_mismatched()
        )
        for task in tasks:
            await self.repair(task)
        if tasks:
            self._logger.info("Aggregate reconciliation repaired", count=len(tasks))
        return len(tasks)
