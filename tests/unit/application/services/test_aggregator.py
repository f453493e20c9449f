"""Tests for ReactionThreadAggregator.

Test cases:
- TC-12-001: Reactions are idempotent per user
- TC-12-002: Concurrent reactions from different users are all counted
- TC-12-003: A failed count update schedules a repair
- TC-12-004: Thread replies are counted from reply rows
- TC-12-005: reconcile_all repairs drifted aggregates
- TC-12-006: Invalid input is rejected
"""

import asyncio
from collections.abc import AsyncIterator

import pytest
import structlog

from chatcore.application.services.aggregator import (
    ReactionThreadAggregator,
    validate_emoji_code,
)
from chatcore.domain.entities.aggregates import ReactionOp, ThreadSummary
from chatcore.domain.entities.channel import Channel
from chatcore.domain.entities.message import Message
from chatcore.domain.entities.reaction import ReactionCount
from chatcore.domain.entities.repair import RepairKind, RepairTask
from chatcore.domain.errors import NotFoundError, TransientStoreError
from chatcore.infrastructure.persistence.channel_repository import (
    SqlChannelRepository,
)
from chatcore.infrastructure.persistence.database import Database
from chatcore.infrastructure.persistence.message_repository import (
    SqlMessageRepository,
)
from chatcore.infrastructure.persistence.reaction_repository import (
    SqlReactionRepository,
)
from chatcore.infrastructure.repair_queue import RepairQueue


class FlakyReactionRepository(SqlReactionRepository):
    """Reaction repository whose count update fails a set number of times."""

    def __init__(self, database: Database, failures: int = 0) -> None:
        super().__init__(database)
        self.failures = failures

    async def adjust_count(self, message_id: str, emoji_code: str, delta: int) -> int:
        if self.failures > 0:
            self.failures -= 1
            raise TransientStoreError("disk I/O error")
        return await super().adjust_count(message_id, emoji_code, delta)


class FlakyMessageRepository(SqlMessageRepository):
    """Message repository whose thread refresh fails a set number of times."""

    def __init__(self, database: Database, failures: int = 0) -> None:
        super().__init__(database)
        self.failures = failures

    async def refresh_thread(self, root_id: str) -> ThreadSummary | None:
        if self.failures > 0:
            self.failures -= 1
            raise TransientStoreError("disk I/O error")
        return await super().refresh_thread(root_id)


@pytest.fixture
async def repair_queue() -> AsyncIterator[RepairQueue]:
    queue = RepairQueue()
    yield queue
    await queue.close()


@pytest.fixture
def messages(database: Database) -> FlakyMessageRepository:
    return FlakyMessageRepository(database)


@pytest.fixture
def reactions(database: Database) -> FlakyReactionRepository:
    return FlakyReactionRepository(database)


@pytest.fixture
def aggregator(
    messages: FlakyMessageRepository,
    reactions: FlakyReactionRepository,
    repair_queue: RepairQueue,
    logger: structlog.stdlib.BoundLogger,
) -> ReactionThreadAggregator:
    return ReactionThreadAggregator(
        messages, reactions, repair_queue, logger, repair_delay=0
    )


@pytest.fixture
async def root(database: Database, messages: FlakyMessageRepository) -> Message:
    channel = await SqlChannelRepository(database).create_channel(
        Channel(name="general"), "U1"
    )
    return await messages.insert_message(
        Message(channel_id=channel.id, author_id="U1", body="root", sequence=1)
    )


async def add_reply(
    messages: SqlMessageRepository, root: Message, sequence: int
) -> Message:
    return await messages.insert_message(
        Message(
            channel_id=root.channel_id,
            author_id="U2",
            body=f"reply {sequence}",
            sequence=sequence,
            parent_id=root.id,
        )
    )


class TestApplyReaction:
    """TC-12-001 and TC-12-002."""

    async def test_add_and_remove(
        self, aggregator: ReactionThreadAggregator, root: Message
    ) -> None:
        added = await aggregator.apply_reaction(root.id, ":+1:", "U1", ReactionOp.ADD)
        removed = await aggregator.apply_reaction(
            root.id, ":+1:", "U1", ReactionOp.REMOVE
        )

        assert (added.count, added.user_ids, added.changed) == (1, ["U1"], True)
        assert (removed.count, removed.user_ids, removed.changed) == (0, [], True)

    async def test_add_twice_is_noop(
        self, aggregator: ReactionThreadAggregator, root: Message
    ) -> None:
        await aggregator.apply_reaction(root.id, ":+1:", "U1", ReactionOp.ADD)

        again = await aggregator.apply_reaction(root.id, ":+1:", "U1", ReactionOp.ADD)

        assert again.count == 1
        assert again.changed is False

    async def test_remove_missing_is_noop(
        self, aggregator: ReactionThreadAggregator, root: Message
    ) -> None:
        summary = await aggregator.apply_reaction(
            root.id, ":+1:", "U1", ReactionOp.REMOVE
        )

        assert summary.count == 0
        assert summary.changed is False

    async def test_concurrent_users_counted(
        self, aggregator: ReactionThreadAggregator, root: Message
    ) -> None:
        await asyncio.gather(
            aggregator.apply_reaction(root.id, ":+1:", "U1", ReactionOp.ADD),
            aggregator.apply_reaction(root.id, ":+1:", "U2", ReactionOp.ADD),
        )

        [summary] = await aggregator.reactions_for(root.id)
        assert summary.count == 2
        assert summary.user_ids == ["U1", "U2"]

    async def test_emoji_codes_counted_separately(
        self, aggregator: ReactionThreadAggregator, root: Message
    ) -> None:
        await aggregator.apply_reaction(root.id, ":+1:", "U1", ReactionOp.ADD)
        await aggregator.apply_reaction(root.id, ":tada:", "U1", ReactionOp.ADD)
        await aggregator.apply_reaction(root.id, ":tada:", "U2", ReactionOp.ADD)

        summaries = await aggregator.reactions_for(root.id)

        assert [(s.emoji_code, s.count) for s in summaries] == [
            (":+1:", 1),
            (":tada:", 2),
        ]

    async def test_emoji_code_stripped(
        self, aggregator: ReactionThreadAggregator, root: Message
    ) -> None:
        summary = await aggregator.apply_reaction(
            root.id, "  :+1: ", "U1", ReactionOp.ADD
        )

        assert summary.emoji_code == ":+1:"


class TestRepair:
    """TC-12-003: A failed count update schedules a repair."""

    async def test_single_failure_retried(
        self,
        aggregator: ReactionThreadAggregator,
        reactions: FlakyReactionRepository,
        repair_queue: RepairQueue,
        root: Message,
    ) -> None:
        reactions.failures = 1

        summary = await aggregator.apply_reaction(root.id, ":+1:", "U1", ReactionOp.ADD)

        assert summary.count == 1
        assert repair_queue.pending_count == 0

    async def test_double_failure_queues_repair(
        self,
        aggregator: ReactionThreadAggregator,
        reactions: FlakyReactionRepository,
        repair_queue: RepairQueue,
        root: Message,
    ) -> None:
        reactions.failures = 2

        with pytest.raises(TransientStoreError):
            await aggregator.apply_reaction(root.id, ":+1:", "U1", ReactionOp.ADD)

        # The row is written but the count is stale until the repair runs.
        stale = await reactions.get_summary(root.id, ":+1:")
        assert (stale.count, stale.user_ids) == (0, ["U1"])

        task = await asyncio.wait_for(repair_queue.dequeue(), timeout=1.0)
        assert (task.kind, task.target_id, task.emoji_code) == (
            RepairKind.REACTIONS,
            root.id,
            ":+1:",
        )

        repaired = await aggregator.repair(task)
        repair_queue.mark_done(task)

        assert repaired is not None
        assert repaired.count == 1
        assert (await reactions.get_summary(root.id, ":+1:")).count == 1

    async def test_retrying_after_failure_is_noop(
        self,
        aggregator: ReactionThreadAggregator,
        reactions: FlakyReactionRepository,
        root: Message,
    ) -> None:
        reactions.failures = 2
        with pytest.raises(TransientStoreError):
            await aggregator.apply_reaction(root.id, ":+1:", "U1", ReactionOp.ADD)

        again = await aggregator.apply_reaction(root.id, ":+1:", "U1", ReactionOp.ADD)

        assert again.changed is False
        assert again.user_ids == ["U1"]

    async def test_reaction_repair_requires_emoji(
        self, aggregator: ReactionThreadAggregator, root: Message
    ) -> None:
        with pytest.raises(ValueError):
            await aggregator.repair(
                RepairTask(kind=RepairKind.REACTIONS, target_id=root.id)
            )


class TestThreadReplies:
    """TC-12-004: Thread replies are counted from reply rows."""

    async def test_increment_counts_replies(
        self,
        aggregator: ReactionThreadAggregator,
        messages: FlakyMessageRepository,
        root: Message,
    ) -> None:
        await add_reply(messages, root, 2)
        first = await aggregator.increment_thread_reply(root.id)
        await add_reply(messages, root, 3)
        second = await aggregator.increment_thread_reply(root.id)

        assert first.reply_count == 1
        assert second.reply_count == 2
        assert second.last_reply_at is not None

    async def test_repeated_increment_is_harmless(
        self,
        aggregator: ReactionThreadAggregator,
        messages: FlakyMessageRepository,
        root: Message,
    ) -> None:
        await add_reply(messages, root, 2)

        await aggregator.increment_thread_reply(root.id)
        summary = await aggregator.increment_thread_reply(root.id)

        assert summary.reply_count == 1

    async def test_concurrent_increments(
        self,
        aggregator: ReactionThreadAggregator,
        messages: FlakyMessageRepository,
        root: Message,
    ) -> None:
        for sequence in range(2, 7):
            await add_reply(messages, root, sequence)

        await asyncio.gather(
            *(aggregator.increment_thread_reply(root.id) for _ in range(5))
        )

        stored = await messages.get_by_id(root.id)
        assert stored is not None
        assert stored.reply_count == 5

    async def test_unknown_root(self, aggregator: ReactionThreadAggregator) -> None:
        with pytest.raises(NotFoundError):
            await aggregator.increment_thread_reply("missing")

    async def test_failure_queues_thread_repair(
        self,
        aggregator: ReactionThreadAggregator,
        messages: FlakyMessageRepository,
        repair_queue: RepairQueue,
        root: Message,
    ) -> None:
        await add_reply(messages, root, 2)
        messages.failures = 2

        with pytest.raises(TransientStoreError):
            await aggregator.increment_thread_reply(root.id)

        task = await asyncio.wait_for(repair_queue.dequeue(), timeout=1.0)
        assert (task.kind, task.target_id) == (RepairKind.THREAD, root.id)

        summary = await aggregator.repair(task)
        assert isinstance(summary, ThreadSummary)
        assert summary.reply_count == 1

    async def test_remove_reply_recounts(
        self,
        aggregator: ReactionThreadAggregator,
        messages: FlakyMessageRepository,
        root: Message,
    ) -> None:
        first = await add_reply(messages, root, 2)
        await add_reply(messages, root, 3)
        await aggregator.increment_thread_reply(root.id)

        summary = await aggregator.remove_thread_reply(root.id, first.id)

        assert summary is not None
        assert summary.reply_count == 1
        assert await messages.get_by_id(first.id) is None

    async def test_remove_unknown_reply(
        self, aggregator: ReactionThreadAggregator, root: Message
    ) -> None:
        with pytest.raises(NotFoundError):
            await aggregator.remove_thread_reply(root.id, "missing")

    async def test_remove_reply_failed_recount_queues_repair(
        self,
        aggregator: ReactionThreadAggregator,
        messages: FlakyMessageRepository,
        repair_queue: RepairQueue,
        root: Message,
    ) -> None:
        reply = await add_reply(messages, root, 2)
        await aggregator.increment_thread_reply(root.id)
        messages.failures = 2

        assert await aggregator.remove_thread_reply(root.id, reply.id) is None

        task = await asyncio.wait_for(repair_queue.dequeue(), timeout=1.0)
        summary = await aggregator.repair(task)
        assert isinstance(summary, ThreadSummary)
        assert summary.reply_count == 0
        assert summary.last_reply_at is None


class TestReconcileAll:
    """TC-12-005: reconcile_all repairs drifted aggregates."""

    async def test_nothing_to_repair(
        self, aggregator: ReactionThreadAggregator, root: Message
    ) -> None:
        await aggregator.apply_reaction(root.id, ":+1:", "U1", ReactionOp.ADD)

        assert await aggregator.reconcile_all() == 0

    async def test_repairs_drift(
        self,
        aggregator: ReactionThreadAggregator,
        database: Database,
        messages: FlakyMessageRepository,
        reactions: FlakyReactionRepository,
        root: Message,
    ) -> None:
        await aggregator.apply_reaction(root.id, ":+1:", "U1", ReactionOp.ADD)
        await add_reply(messages, root, 2)
        async with database.get_session() as session:
            counter = await session.get(ReactionCount, (root.id, ":+1:"))
            assert counter is not None
            counter.count = 5
            session.add(counter)

        assert await aggregator.reconcile_all() == 2

        assert (await reactions.get_summary(root.id, ":+1:")).count == 1
        stored = await messages.get_by_id(root.id)
        assert stored is not None
        assert stored.reply_count == 1
        assert await aggregator.reconcile_all() == 0


class TestValidation:
    """TC-12-006: Invalid input is rejected."""

    @pytest.mark.parametrize("emoji_code", ["", "   ", "x" * 65])
    def test_invalid_emoji_code(self, emoji_code: str) -> None:
        with pytest.raises(ValueError):
            validate_emoji_code(emoji_code)

    async def test_unknown_message(self, aggregator: ReactionThreadAggregator) -> None:
        with pytest.raises(NotFoundError):
            await aggregator.apply_reaction("missing", ":+1:", "U1", ReactionOp.ADD)

    async def test_reactions_for_unknown_message(
        self, aggregator: ReactionThreadAggregator
    ) -> None:
        with pytest.raises(NotFoundError):
            await aggregator.reactions_for("missing")
