"""Shared fixtures."""

from collections.abc import AsyncIterator
from pathlib import Path

import pytest
import structlog

from chatcore.application.services import (
    ConnectionRegistry,
    FanoutRouter,
    MessageSequencer,
    MessagingService,
    ReactionThreadAggregator,
)
from chatcore.config.models import RealtimeConfig, ServerConfig
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
from chatcore.presentation.http.server import HTTPServer


@pytest.fixture
def logger() -> structlog.stdlib.BoundLogger:
    return structlog.stdlib.get_logger()


@pytest.fixture
async def database(tmp_path: Path) -> AsyncIterator[Database]:
    """Create a test database."""
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await db.initialize()
    yield db
    await db.close()


@pytest.fixture
async def registry(
    database: Database, logger: structlog.stdlib.BoundLogger
) -> AsyncIterator[ConnectionRegistry]:
    registry = ConnectionRegistry(SqlChannelRepository(database), logger)
    yield registry
    await registry.close_all()


@pytest.fixture
async def http_server(
    database: Database,
    registry: ConnectionRegistry,
    logger: structlog.stdlib.BoundLogger,
) -> AsyncIterator[HTTPServer]:
    """Create an HTTPServer wired to a real store, without starting it."""
    channels = SqlChannelRepository(database)
    messages = SqlMessageRepository(database)
    repair_queue = RepairQueue()
    router = FanoutRouter(registry, logger)
    aggregator = ReactionThreadAggregator(
        messages, SqlReactionRepository(database), repair_queue, logger
    )
    messaging = MessagingService(
        channels,
        messages,
        registry,
        MessageSequencer(channels, logger),
        aggregator,
        router,
        logger,
        history_page_size=20,
    )
    server = HTTPServer(
        config=ServerConfig(host="127.0.0.1", port=0),
        realtime=RealtimeConfig(),
        messaging=messaging,
        registry=registry,
        logger=logger,
    )
    yield server
    await repair_queue.close()
