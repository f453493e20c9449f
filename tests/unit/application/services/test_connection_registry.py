"""Tests for Connection and ConnectionRegistry.

Test cases:
- TC-09-001: Register starts the writer and indexes by user
- TC-09-002: Subscribe requires channel membership
- TC-09-003: Subscribe and unsubscribe are idempotent
- TC-09-004: Deregister is idempotent and immediate
- TC-09-005: Failed sends drop the connection
- TC-09-006: Idle connections expire
- TC-09-007: Full outboxes refuse events
"""

import asyncio
from collections.abc import AsyncIterator
from datetime import datetime, timedelta, timezone

import pytest
import structlog

from chatcore.application.services.connection_registry import (
    Connection,
    ConnectionRegistry,
)
from chatcore.domain.entities.event import EventType, RealtimeEvent
from chatcore.domain.errors import ConflictError, ForbiddenError, NotFoundError
from fakes import FakeTransport, MemberAccess, wait_sent


@pytest.fixture
def access() -> MemberAccess:
    return MemberAccess(("C1", "U1"), ("C1", "U2"), ("C2", "U1"))


@pytest.fixture
async def registry(
    access: MemberAccess, logger: structlog.stdlib.BoundLogger
) -> AsyncIterator[ConnectionRegistry]:
    registry = ConnectionRegistry(access, logger)
    yield registry
    await registry.close_all()


def pong() -> RealtimeEvent:
    return RealtimeEvent(type=EventType.PONG)


class TestConnection:
    """TC-09-007: Full outboxes refuse events."""

    async def test_offer_until_full(self) -> None:
        connection = Connection(FakeTransport(), outbox_size=2)

        assert connection.offer(pong())
        assert connection.offer(pong())
        assert not connection.offer(pong())
        assert connection.dropped_count == 1
        assert connection.queued_count == 2

    async def test_offer_after_stop(self) -> None:
        connection = Connection(FakeTransport())

        await connection.stop()

        assert not connection.is_open
        assert not connection.offer(pong())

    async def test_close_closes_transport(self) -> None:
        transport = FakeTransport()
        connection = Connection(transport)

        await connection.close()

        assert transport.closed


class TestRegister:
    """TC-09-001: Register starts the writer and indexes by user."""

    async def test_register_delivers_offered_events(
        self, registry: ConnectionRegistry
    ) -> None:
        transport = FakeTransport()
        connection = registry.register(Connection(transport), "U1")

        connection.offer(pong())
        await wait_sent(transport)

        assert connection.user_id == "U1"
        assert connection.id in registry
        assert len(registry) == 1
        assert transport.sent[0]["type"] == "pong"

    async def test_multiple_connections_per_user(
        self, registry: ConnectionRegistry
    ) -> None:
        first = registry.register(Connection(FakeTransport()), "U1")
        second = registry.register(Connection(FakeTransport()), "U1")

        assert {c.id for c in registry.connections_for_user("U1")} == {
            first.id,
            second.id,
        }
        assert registry.is_online("U1")
        assert not registry.is_online("U2")

    async def test_duplicate_id_rejected(self, registry: ConnectionRegistry) -> None:
        registry.register(Connection(FakeTransport(), connection_id="X"), "U1")

        with pytest.raises(ConflictError):
            registry.register(Connection(FakeTransport(), connection_id="X"), "U2")


class TestSubscribe:
    """TC-09-002 and TC-09-003."""

    async def test_subscribe_member(self, registry: ConnectionRegistry) -> None:
        connection = registry.register(Connection(FakeTransport()), "U1")

        assert await registry.subscribe(connection.id, "C1") is True

        assert registry.subscribers("C1") == [connection]
        assert connection.channels == {"C1"}

    async def test_subscribe_twice_is_noop(self, registry: ConnectionRegistry) -> None:
        connection = registry.register(Connection(FakeTransport()), "U1")
        await registry.subscribe(connection.id, "C1")

        assert await registry.subscribe(connection.id, "C1") is False
        assert registry.subscribers("C1") == [connection]

    async def test_subscribe_non_member_forbidden(
        self, registry: ConnectionRegistry
    ) -> None:
        connection = registry.register(Connection(FakeTransport()), "U2")

        with pytest.raises(ForbiddenError):
            await registry.subscribe(connection.id, "C2")

        assert registry.subscribers("C2") == []

    async def test_subscribe_unknown_connection(
        self, registry: ConnectionRegistry
    ) -> None:
        with pytest.raises(NotFoundError):
            await registry.subscribe("missing", "C1")

    async def test_subscribe_reflects_revoked_membership(
        self, registry: ConnectionRegistry, access: MemberAccess
    ) -> None:
        connection = registry.register(Connection(FakeTransport()), "U2")
        access.members.discard(("C1", "U2"))

        with pytest.raises(ForbiddenError):
            await registry.subscribe(connection.id, "C1")

    async def test_unsubscribe(self, registry: ConnectionRegistry) -> None:
        connection = registry.register(Connection(FakeTransport()), "U1")
        await registry.subscribe(connection.id, "C1")

        assert registry.unsubscribe(connection.id, "C1") is True
        assert registry.unsubscribe(connection.id, "C1") is False
        assert registry.subscribers("C1") == []
        assert connection.channels == set()

    async def test_unsubscribe_user(self, registry: ConnectionRegistry) -> None:
        first = registry.register(Connection(FakeTransport()), "U1")
        second = registry.register(Connection(FakeTransport()), "U1")
        other = registry.register(Connection(FakeTransport()), "U2")
        for connection in (first, second, other):
            await registry.subscribe(connection.id, "C1")

        removed = registry.unsubscribe_user("C1", "U1")

        assert {c.id for c in removed} == {first.id, second.id}
        assert registry.subscribers("C1") == [other]


class TestDeregister:
    """TC-09-004 and TC-09-005."""

    async def test_deregister_removes_everywhere(
        self, registry: ConnectionRegistry
    ) -> None:
        connection = registry.register(Connection(FakeTransport()), "U1")
        await registry.subscribe(connection.id, "C1")
        await registry.subscribe(connection.id, "C2")

        removed = await registry.deregister(connection.id)

        assert removed is connection
        assert connection.id not in registry
        assert registry.subscribers("C1") == []
        assert registry.subscribers("C2") == []
        assert not registry.is_online("U1")
        assert not connection.is_open

    async def test_deregister_twice(self, registry: ConnectionRegistry) -> None:
        connection = registry.register(Connection(FakeTransport()), "U1")

        assert await registry.deregister(connection.id) is connection
        assert await registry.deregister(connection.id) is None

    async def test_deregister_unknown(self, registry: ConnectionRegistry) -> None:
        assert await registry.deregister("missing") is None

    async def test_deregister_drops_queued_events(
        self, registry: ConnectionRegistry
    ) -> None:
        transport = FakeTransport()
        transport.gate = asyncio.Event()
        connection = registry.register(Connection(transport), "U1")
        connection.offer(pong())
        connection.offer(pong())

        await registry.deregister(connection.id)
        transport.gate.set()
        await asyncio.sleep(0.01)

        assert transport.sent == []
        assert connection.queued_count == 0

    @pytest.mark.parametrize(
        "error",
        [ConnectionResetError("gone"), TypeError("not JSON serializable")],
        ids=["transport", "unexpected"],
    )
    async def test_send_failure_drops_connection(
        self, registry: ConnectionRegistry, error: Exception
    ) -> None:
        transport = FakeTransport(fail_with=error)
        connection = registry.register(Connection(transport), "U1")
        await registry.subscribe(connection.id, "C1")

        connection.offer(pong())
        async with asyncio.timeout(1.0):
            while connection.id in registry:
                await asyncio.sleep(0.01)

        assert registry.subscribers("C1") == []
        assert not connection.is_open
        # The owner still deregisters the connection when its socket ends.
        assert await registry.deregister(connection.id) is None


class TestExpireIdle:
    """TC-09-006: Idle connections expire."""

    async def test_expire_idle(self, registry: ConnectionRegistry) -> None:
        idle_transport = FakeTransport()
        idle = registry.register(Connection(idle_transport), "U1")
        active = registry.register(Connection(FakeTransport()), "U2")
        now = datetime.now(timezone.utc)
        idle.last_seen = now - timedelta(seconds=120)

        expired = await registry.expire_idle(60, now=now)

        assert expired == [idle]
        assert idle.id not in registry
        assert active.id in registry
        assert idle_transport.closed

    async def test_touch_keeps_connection(self, registry: ConnectionRegistry) -> None:
        connection = registry.register(Connection(FakeTransport()), "U1")
        connection.last_seen = datetime.now(timezone.utc) - timedelta(seconds=120)

        registry.touch(connection.id)

        assert await registry.expire_idle(60) == []

    async def test_touch_unknown(self, registry: ConnectionRegistry) -> None:
        with pytest.raises(NotFoundError):
            registry.touch("missing")
