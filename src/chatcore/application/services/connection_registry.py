"""Connection registry: live connections and their channel subscriptions."""

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import ulid
from structlog.stdlib import BoundLogger

from chatcore.domain.entities.event import RealtimeEvent
from chatcore.domain.errors import ConflictError, ForbiddenError, NotFoundError
from chatcore.domain.repositories.channel_repository import ChannelAccess
from chatcore.domain.transport import Transport

DEFAULT_OUTBOX_SIZE = 256


class Connection:
    """One live client connection.

    Outbound events go through a bounded queue drained by a dedicated writer
    task, so enqueueing never waits on the client.

    Attributes:
        id: ULID of the connection.
        user_id: Authenticated owner, set on registration.
        channels: Subscribed channel IDs.
        last_seen: Time of the latest inbound activity.
        dropped_count: Events discarded because the outbox was full.
    """

    def __init__(
        self,
        transport: Transport,
        outbox_size: int = DEFAULT_OUTBOX_SIZE,
        connection_id: str | None = None,
    ) -> None:
        self.id = connection_id or str(ulid.new())
        self.user_id: str | None = None
        self.channels: set[str] = set()
        self.last_seen = datetime.now(timezone.utc)
        self.dropped_count = 0
        self._transport = transport
        self._outbox: asyncio.Queue[RealtimeEvent] = asyncio.Queue(maxsize=outbox_size)
        self._writer: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def is_open(self) -> bool:
        """Return True while the connection accepts events."""
        return not self._closed

    @property
    def queued_count(self) -> int:
        """Return the number of events waiting to be sent."""
        return self._outbox.qsize()

    def touch(self) -> None:
        """Record inbound activity."""
        self.last_seen = datetime.now(timezone.utc)

    def offer(self, event: RealtimeEvent) -> bool:
        """Enqueue an event without waiting.

        Returns:
            True if queued, False if the connection is closed or its outbox
            is full. A refused event is gone for good.
        """
        if self._closed:
            return False
        try:
            self._outbox.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped_count += 1
            return False
        return True

    def start(
        self, logger: BoundLogger, on_failure: Callable[["Connection"], None]
    ) -> None:
        """Start the writer task."""
        if self._writer is None:
            self._writer = asyncio.create_task(
                self._write_loop(logger, on_failure), name=f"writer-{self.id}"
            )

    async def _write_loop(
        self, logger: BoundLogger, on_failure: Callable[["Connection"], None]
    ) -> None:
        while True:
            event = await self._outbox.get()
            try:
                await self._transport.send(event.to_wire())
            except (ConnectionError, RuntimeError) as e:
                logger.info(
                    "Connection send failed",
                    connection_id=self.id,
                    event_type=event.type.value,
                    error=str(e),
                )
            except Exception:
                logger.exception(
                    "Connection writer crashed",
                    connection_id=self.id,
                    event_type=event.type.value,
                )
            else:
                continue
            self._closed = True
            on_failure(self)
            return

    async def stop(self) -> None:
        """Stop the writer and drop every queued event."""
        self._closed = True
        writer, self._writer = self._writer, None
        if writer is not None and writer is not asyncio.current_task():
            writer.cancel()
            try:
                await writer
            except asyncio.CancelledError:
                pass
        while not self._outbox.empty():
            self._outbox.get_nowait()

    async def close(self) -> None:
        """Stop the writer and close the transport."""
        await self.stop()
        await self._transport.close()


class ConnectionRegistry:
    """Tracks live connections, their owners and their channel subscriptions.

    The channel index is read directly by the fan-out router, so a
    subscription change is visible to the next publish.

    Args:
        access: Channel read-authorization check.
        logger: Structured logger.
    """

    def __init__(self, access: ChannelAccess, logger: BoundLogger) -> None:
        self._access = access
        self._logger = logger
        self._connections: dict[str, Connection] = {}
        self._by_channel: dict[str, dict[str, Connection]] = {}
        self._by_user: dict[str, dict[str, Connection]] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._connections

    def get(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    def register(self, connection: Connection, user_id: str) -> Connection:
        """Register a connection for an authenticated user and start its writer.

        Args:
            connection: The new connection.
            user_id: Authenticated user identifier supplied by the session layer.

        Returns:
            The registered connection.

        Raises:
            ConflictError: If a connection with the same ID is registered.
        """
        if connection.id in self._connections:
            raise ConflictError(f"Connection already registered: {connection.id}")

        connection.user_id = user_id
        self._connections[connection.id] = connection
        self._by_user.setdefault(user_id, {})[connection.id] = connection
        connection.start(self._logger, self._drop)
        self._logger.info(
            "Connection registered", connection_id=connection.id, user_id=user_id
        )
        return connection

    async def subscribe(self, connection_id: str, channel_id: str) -> bool:
        """Subscribe a connection to a channel.

        Returns:
            True if newly subscribed, False if it already was.

        Raises:
            NotFoundError: If the connection is not registered.
            ForbiddenError: If the connection's user may not read the channel.
        """
        connection = self._require(connection_id)
        if channel_id in connection.channels:
            return False

        if connection.user_id is None or not await self._access.is_member(
            channel_id, connection.user_id
        ):
            raise ForbiddenError(f"Not a member of channel {channel_id}")

        # The connection may have gone away during the membership check.
        connection = self._require(connection_id)
        connection.channels.add(channel_id)
        self._by_channel.setdefault(channel_id, {})[connection_id] = connection
        self._logger.debug(
            "Subscribed", connection_id=connection_id, channel_id=channel_id
        )
        return True

    def unsubscribe(self, connection_id: str, channel_id: str) -> bool:
        """Unsubscribe a connection from a channel.

        Returns:
            True if a subscription was removed.

        Raises:
            NotFoundError: If the connection is not registered.
        """
        connection = self._require(connection_id)
        if channel_id not in connection.channels:
            return False
        connection.channels.discard(channel_id)
        self._remove_from_channel(channel_id, connection_id)
        self._logger.debug(
            "Unsubscribed", connection_id=connection_id, channel_id=channel_id
        )
        return True

    def unsubscribe_user(self, channel_id: str, user_id: str) -> list[Connection]:
        """Unsubscribe every connection of a user from a channel.

        Returns:
            The connections that were subscribed.
        """
        removed = []
        for connection in self.connections_for_user(user_id):
            if channel_id in connection.channels:
                self.unsubscribe(connection.id, channel_id)
                removed.append(connection)
        return removed

    async def deregister(self, connection_id: str) -> Connection | None:
        """Remove a connection from every index and stop its writer.

        Idempotent: an unknown or already removed connection is a no-op.

        Returns:
            The removed connection, or None if it was not registered.
        """
        connection = self._drop_from_indexes(connection_id)
        if connection is None:
            return None
        await connection.stop()
        self._logger.info(
            "Connection deregistered",
            connection_id=connection_id,
            user_id=connection.user_id,
            dropped_events=connection.dropped_count,
        )
        return connection

    def subscribers(self, channel_id: str) -> list[Connection]:
        """Return a snapshot of the connections subscribed to a channel."""
        return list(self._by_channel.get(channel_id, {}).values())

    def connections_for_user(self, user_id: str) -> list[Connection]:
        """Return a snapshot of a user's connections."""
        return list(self._by_user.get(user_id, {}).values())

    def is_online(self, user_id: str) -> bool:
        """Return True if the user holds at least one connection."""
        return bool(self._by_user.get(user_id))

    def touch(self, connection_id: str) -> None:
        """Refresh a connection's last-seen time.

        Raises:
            NotFoundError: If the connection is not registered.
        """
        self._require(connection_id).touch()

    async def expire_idle(
        self, max_idle: float, now: datetime | None = None
    ) -> list[Connection]:
        """Deregister and close connections idle for longer than `max_idle`.

        Args:
            max_idle: Allowed idle time in seconds.
            now: Reference time, defaults to the current UTC time.

        Returns:
            The expired connections.
        """
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(seconds=max_idle)
        expired = [c for c in self._connections.values() if c.last_seen < cutoff]
        for connection in expired:
            await self.deregister(connection.id)
            await connection.close()
            self._logger.info(
                "Idle connection expired",
                connection_id=connection.id,
                user_id=connection.user_id,
            )
        return expired

    async def close_all(self) -> None:
        """Deregister and close every connection."""
        for connection_id in list(self._connections):
            connection = await self.deregister(connection_id)
            if connection is not None:
                await connection.close()

    def _require(self, connection_id: str) -> Connection:
        connection = self._connections.get(connection_id)
        if connection is None:
            raise NotFoundError(f"Connection not registered: {connection_id}")
        return connection

    def _drop(self, connection: Connection) -> None:
        # Called from a writer task whose transport failed.
        if self._drop_from_indexes(connection.id) is not None:
            self._logger.info(
                "Connection dropped after send failure",
                connection_id=connection.id,
                user_id=connection.user_id,
            )

    def _drop_from_indexes(self, connection_id: str) -> Connection | None:
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return None
        for channel_id in connection.channels:
            self._remove_from_channel(channel_id, connection_id)
        if connection.user_id is not None:
            user_connections = self._by_user.get(connection.user_id, {})
            user_connections.pop(connection_id, None)
            if not user_connections:
                self._by_user.pop(connection.user_id, None)
        return connection

    def _remove_from_channel(self, channel_id: str, connection_id: str) -> None:
        channel = self._by_channel.get(channel_id)
        if channel is None:
            return
        channel.pop(connection_id, None)
        if not channel:
            del self._by_channel[channel_id]
