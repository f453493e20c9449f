"""Per-channel message sequencer."""

from structlog.stdlib import BoundLogger

from chatcore.domain.errors import ConflictError, TransientStoreError
from chatcore.domain.repositories.channel_repository import ChannelRepository
from chatcore.infrastructure.keyed_lock import KeyedLock
from chatcore.infrastructure.retry import retry_once


class MessageSequencer:
    """Issues strictly increasing sequence numbers per channel.

    Within the process a per-channel lock keeps a single writer per channel;
    across processes the store's atomic counter update does. Each number is
    committed before the message that carries it is written, so a message
    whose insert fails leaves its number permanently consumed: sequences may
    have gaps but never repeat.

    Args:
        channels: Repository holding the sequence counters.
        logger: Structured logger.
    """

    def __init__(self, channels: ChannelRepository, logger: BoundLogger) -> None:
        self._channels = channels
        self._logger = logger
        self._locks = KeyedLock()

    async def next_sequence(self, channel_id: str) -> int:
        """Reserve the next sequence number for a channel.

        Args:
            channel_id: The channel ID.

        Returns:
            A value greater than every value issued before for the channel.

        Raises:
            TransientStoreError: If the store failed twice.
            ConflictError: If the counter row was contended twice.
        """
        async with self._locks.hold(channel_id):
            return await retry_once(
                lambda: self._channels.next_sequence(channel_id),
                self._logger,
                "next_sequence",
                retry_on=(TransientStoreError, ConflictError),
            )

    async def current_sequence(self, channel_id: str) -> int:
        """Return the last sequence number issued for a channel (0 if none)."""
        return await self._channels.current_sequence(channel_id)

    def record_consumed(self, channel_id: str, sequence: int, reason: str) -> None:
        """Log a reserved sequence number that no message will ever carry."""
        self._logger.warning(
            "Sequence number consumed without a message",
            channel_id=channel_id,
            sequence=sequence,
            reason=reason,
        )
