"""Test doubles shared across test modules."""

import asyncio
from typing import Any


class FakeTransport:
    """In-memory transport recording what a connection sends."""

    def __init__(self, fail_with: Exception | None = None) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self.fail_with = fail_with
        self.gate: asyncio.Event | None = None

    async def send(self, data: dict[str, Any]) -> None:
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(data)

    async def close(self) -> None:
        self.closed = True

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [event for event in self.sent if event["type"] == event_type]


async def wait_sent(*transports: FakeTransport, count: int = 1) -> None:
    """Wait until every transport has sent at least `count` events."""
    async with asyncio.timeout(1.0):
        while any(len(t.sent) < count for t in transports):
            await asyncio.sleep(0.01)


class MemberAccess:
    """ChannelAccess backed by a set of (channel_id, user_id) pairs."""

    def __init__(self, *members: tuple[str, str]) -> None:
        self.members = set(members)

    async def is_member(self, channel_id: str, user_id: str) -> bool:
        return (channel_id, user_id) in self.members
