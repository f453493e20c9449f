"""Client-side reconciliation of pushed events with fetched history."""

import asyncio
from enum import Enum
from typing import Any, Protocol

from structlog.stdlib import BoundLogger


class ViewState(str, Enum):
    """Synchronization state of a channel view."""

    EMPTY = "empty"
    SYNCING = "syncing"
    LIVE = "live"
    GAP_RECOVERING = "gap_recovering"


class HistorySource(Protocol):
    """Fetches persisted channel messages by sequence range."""

    async def fetch_messages(
        self, channel_id: str, after: int, until: int | None = None
    ) -> list[dict[str, Any]]:
        """Return messages with `after < sequence <= until`, ascending.

        Each message is a mapping with at least `id` and `sequence`.
        """
        ...


class ChannelView:
    """A client's ordered, de-duplicated view of one channel.

    The view tracks the highest sequence number it holds. A pushed message
    one past it is appended; an older one is a duplicate; a newer one means
    messages were missed, and the range in between is fetched before the
    push is applied. Sequence numbers consumed by failed sends never show
    up in history, so a fetched range may legitimately have holes.

    Every operation runs under the view's lock, so a push that arrives
    during a sync or gap fetch is judged against the updated maximum.

    Args:
        channel_id: The channel shown by this view.
        history: Source of persisted messages.
        logger: Structured logger.
    """

    def __init__(
        self, channel_id: str, history: HistorySource, logger: BoundLogger
    ) -> None:
        self.channel_id = channel_id
        self.state = ViewState.EMPTY
        self.max_sequence = 0
        self._history = history
        self._logger = logger.bind(channel_id=channel_id)
        self._messages: dict[str, dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    @property
    def messages(self) -> list[dict[str, Any]]:
        """Return the messages of the view in sequence order."""
        return sorted(self._messages.values(), key=lambda m: m["sequence"])

    def __len__(self) -> int:
        return len(self._messages)

    async def sync(self) -> None:
        """Replace the view with the channel's persisted history.

        Raises:
            Any error of the history source. A view that was never synced
            goes back to EMPTY; otherwise the previous contents are kept.
        """
        async with self._lock:
            await self._sync()

    async def reconnect(self) -> None:
        """Rebuild the view after the event stream was interrupted."""
        async with self._lock:
            self._logger.info("Resyncing channel view after reconnect")
            await self._sync()

    async def on_push(self, message: dict[str, Any]) -> bool:
        """Apply a pushed message.

        Args:
            message: Message payload with `id` and `sequence`.

        Returns:
            True if the view changed, False if the message was discarded.

        Raises:
            Any error of the history source while a gap is being filled. The
            view is left as it was and stays LIVE, so the push can be
            retried.
        """
        async with self._lock:
            if self.state is ViewState.EMPTY:
                # Not synced yet; the first sync brings the message in.
                return False

            sequence = message["sequence"]
            if sequence <= self.max_sequence:
                self._logger.debug("Duplicate push discarded", sequence=sequence)
                return False

            if sequence == self.max_sequence + 1:
                self._append(message)
                return True

            self.state = ViewState.GAP_RECOVERING
            self._logger.info(
                "Sequence gap detected",
                max_sequence=self.max_sequence,
                pushed_sequence=sequence,
            )
            try:
                fetched = await self._history.fetch_messages(
                    self.channel_id, after=self.max_sequence, until=sequence
                )
            except Exception as e:
                self._logger.warning("Gap fetch failed", error=str(e))
                self.state = ViewState.LIVE
                raise

            self._merge(fetched)
            self._append(message)
            self.state = ViewState.LIVE
            self._logger.info(
                "Sequence gap filled", fetched=len(fetched), max_sequence=sequence
            )
            return True

    async def on_update(self, message: dict[str, Any]) -> bool:
        """Replace an edited message the view already holds.

        Edits of messages outside the view are ignored; a later sync or
        gap fetch brings in the stored version.
        """
        async with self._lock:
            if message["id"] not in self._messages:
                return False
            self._messages[message["id"]] = message
            return True

    async def on_delete(self, message_ids: list[str]) -> int:
        """Drop deleted messages and return how many the view held.

        The maximum sequence is kept, since deleted numbers are never reused.
        """
        async with self._lock:
            removed = 0
            for message_id in message_ids:
                if self._messages.pop(message_id, None) is not None:
                    removed += 1
            return removed

    async def _sync(self) -> None:
        previous = self.state
        self.state = ViewState.SYNCING
        try:
            fetched = await self._history.fetch_messages(self.channel_id, after=0)
        except Exception as e:
            self._logger.warning("Channel sync failed", error=str(e))
            if previous is ViewState.EMPTY:
                self.state = ViewState.EMPTY
            else:
                self.state = ViewState.LIVE
            raise

        self._messages = {}
        self.max_sequence = 0
        self._merge(fetched)
        self.state = ViewState.LIVE
        self._logger.debug(
            "Channel view synced",
            count=len(self._messages),
            max_sequence=self.max_sequence,
        )

    def _append(self, message: dict[str, Any]) -> None:
        self._messages[message["id"]] = message
        self.max_sequence = max(self.max_sequence, message["sequence"])

    def _merge(self, messages: list[dict[str, Any]]) -> None:
        for message in messages:
            if message["id"] not in self._messages:
                self._append(message)
