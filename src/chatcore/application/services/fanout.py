"""Channel fan-out router."""

from structlog.stdlib import BoundLogger

from chatcore.application.services.connection_registry import (
    Connection,
    ConnectionRegistry,
)
from chatcore.domain.entities.event import RealtimeEvent


class FanoutRouter:
    """Delivers events to every connection subscribed to a channel.

    `publish` only enqueues onto each connection's outbox and never awaits a
    send, so per-channel delivery order is the order of `publish` calls.
    Delivery is at-most-once: an event refused by a full outbox is dropped
    for that connection and never retried. Clients catch up through
    sequence-gap detection and the history endpoint.

    Args:
        registry: The connection registry whose channel index is read.
        logger: Structured logger.
    """

    def __init__(self, registry: ConnectionRegistry, logger: BoundLogger) -> None:
        self._registry = registry
        self._logger = logger
        self._published = 0
        self._dropped = 0

    @property
    def published_count(self) -> int:
        """Return the number of events enqueued across all connections."""
        return self._published

    @property
    def dropped_count(self) -> int:
        """Return the number of per-connection deliveries dropped."""
        return self._dropped

    def publish(
        self,
        channel_id: str,
        event: RealtimeEvent,
        exclude_connection_id: str | None = None,
    ) -> int:
        """Deliver an event to the channel's current subscribers.

        Args:
            channel_id: Target channel.
            event: The event to deliver.
            exclude_connection_id: Connection to skip, e.g. a typing sender.

        Returns:
            Number of connections the event was enqueued for. Zero
            subscribers is not an error.
        """
        targets = [
            connection
            for connection in self._registry.subscribers(channel_id)
            if connection.id != exclude_connection_id
        ]
        return self._deliver(targets, event, channel_id=channel_id)

    def publish_to_user(self, user_id: str, event: RealtimeEvent) -> int:
        """Deliver an event to every connection of one user.

        Returns:
            Number of connections the event was enqueued for.
        """
        return self._deliver(self._registry.connections_for_user(user_id), event)

    def _deliver(
        self,
        targets: list[Connection],
        event: RealtimeEvent,
        channel_id: str | None = None,
    ) -> int:
        delivered = 0
        for connection in targets:
            if connection.offer(event):
                delivered += 1
                continue
            self._dropped += 1
            self._logger.warning(
                "Event dropped for connection",
                connection_id=connection.id,
                channel_id=channel_id,
                event_type=event.type.value,
                sequence=event.sequence,
                queued=connection.queued_count,
            )
        self._published += delivered
        return delivered
