"""RepairQueue implementation with deduplication and delayed enqueue support."""

import asyncio

from chatcore.domain.entities.repair import RepairTask


class RepairQueue:
    """In-memory queue of aggregate repair tasks.

    Supports:
    - Deduplication based on identity_key (one pending repair per aggregate)
    - Delayed enqueue, so a struggling store gets a moment before the retry
    - Processing state tracking
    """

    def __init__(self) -> None:
        """Initialize the repair queue."""
        self._queue: asyncio.Queue[RepairTask] = asyncio.Queue()
        self._pending: dict[str, RepairTask] = {}
        # Keyed by task.id so a new repair of the same aggregate can be
        # queued while an earlier one is still running.
        self._processing: dict[str, RepairTask] = {}
        self._delay_tasks: dict[str, asyncio.Task[None]] = {}

    @property
    def pending_count(self) -> int:
        """Return the number of pending repairs, including delayed ones."""
        return len(set(self._pending) | set(self._delay_tasks))

    @property
    def processing_count(self) -> int:
        """Return the number of repairs being processed."""
        return len(self._processing)

    async def enqueue(self, task: RepairTask, delay: float = 0) -> None:
        """Add a repair task to the queue.

        A task for an aggregate that already has a delayed task pending
        replaces it.

        Args:
            task: The repair to enqueue.
            delay: Delay in seconds before the task becomes available.
        """
        key = task.get_identity_key()

        if key in self._delay_tasks:
            self._delay_tasks[key].cancel()
            try:
                await self._delay_tasks[key]
            except asyncio.CancelledError:
                pass
            self._delay_tasks.pop(key, None)

        if delay > 0:
            self._delay_tasks[key] = asyncio.create_task(
                self._delayed_enqueue(task, delay)
            )
        else:
            # A newer task for the same key supersedes the queued one; the
            # stale entry is skipped in dequeue().
            self._pending[key] = task
            await self._queue.put(task)

    async def _delayed_enqueue(self, task: RepairTask, delay: float) -> None:
        key = task.get_identity_key()
        try:
            await asyncio.sleep(delay)
            self._pending[key] = task
            await self._queue.put(task)
        finally:
            if key in self._delay_tasks:
                del self._delay_tasks[key]

    async def dequeue(self) -> RepairTask:
        """Get the next repair task, skipping superseded ones.

        Returns:
            The next task to process.
        """
        while True:
            task = await self._queue.get()
            key = task.get_identity_key()

            if key in self._pending and self._pending[key].id == task.id:
                del self._pending[key]
                self._processing[task.id] = task
                return task

    def mark_done(self, task: RepairTask) -> None:
        """Mark a repair task as done processing.

        Args:
            task: The task that has been processed.
        """
        self._processing.pop(task.id, None)

    async def close(self) -> None:
        """Cancel every delayed enqueue that has not fired yet."""
        for task in list(self._delay_tasks.values()):
            task.cancel()
        for task in list(self._delay_tasks.values()):
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._delay_tasks.clear()
