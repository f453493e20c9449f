"""Application entry point for chatcore."""

import argparse
import asyncio
import signal
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path

from pydantic import ValidationError
from structlog.stdlib import BoundLogger

from chatcore.application.services import (
    ConnectionRegistry,
    FanoutRouter,
    MessageSequencer,
    MessagingService,
    ReactionThreadAggregator,
)
from chatcore.config import (
    ConfigError,
    ConfigFileNotFoundError,
    load_config,
)
from chatcore.domain.entities.repair import RepairTask
from chatcore.domain.errors import ChatError
from chatcore.infrastructure import Database, RepairQueue
from chatcore.infrastructure.logging import get_logger, setup_logging
from chatcore.infrastructure.persistence import (
    SqlChannelRepository,
    SqlMessageRepository,
    SqlReactionRepository,
)
from chatcore.presentation.http.server import HTTPServer

# Shutdown timeout in seconds
SHUTDOWN_TIMEOUT = 30


def parse_args(args: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments.

    Args:
        args: Command line arguments. If None, uses sys.argv.

    Returns:
        Parsed arguments namespace.
    """
    parser = argparse.ArgumentParser(
        description="chatcore - Real-time chat fan-out server"
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to configuration file (default: config.yaml)",
    )
    return parser.parse_args(args)


async def run_main_loop(
    repair_queue: RepairQueue,
    aggregator: ReactionThreadAggregator,
    shutdown_event: asyncio.Event,
    running_check: Callable[[], bool],
    logger: BoundLogger,
) -> None:
    """Run the aggregate repair loop.

    Args:
        repair_queue: Queue of pending aggregate repairs.
        aggregator: Aggregator that performs the repairs.
        shutdown_event: Event that signals shutdown.
        running_check: Callable that returns whether the loop should continue.
        logger: Logger instance.
    """
    while running_check():
        dequeue_task = asyncio.create_task(repair_queue.dequeue())
        shutdown_task = asyncio.create_task(shutdown_event.wait())

        try:
            done, pending = await asyncio.wait(
                [dequeue_task, shutdown_task],
                return_when=asyncio.FIRST_COMPLETED,
            )

            for task in pending:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

            if dequeue_task in done:
                await _process_repair(
                    dequeue_task.result(), aggregator, repair_queue, logger
                )
            if shutdown_task in done:
                break

        except asyncio.CancelledError:
            for task in (dequeue_task, shutdown_task):
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
            raise


async def _process_repair(
    task: RepairTask,
    aggregator: ReactionThreadAggregator,
    repair_queue: RepairQueue,
    logger: BoundLogger,
) -> None:
    """Apply a single repair task.

    A repair that fails is left to the next reconciliation pass.
    """
    try:
        await aggregator.repair(task)
    except ChatError as e:
        logger.error(
            "Aggregate repair failed",
            task_id=task.id,
            kind=task.kind.value,
            target_id=task.target_id,
            error=str(e),
        )
    finally:
        repair_queue.mark_done(task)


async def run_periodic(
    interval: float,
    action: Callable[[], Awaitable[object]],
    shutdown_event: asyncio.Event,
    logger: BoundLogger,
    description: str,
) -> None:
    """Run `action` every `interval` seconds until shutdown is signaled.

    Args:
        interval: Seconds between runs.
        action: Zero-argument coroutine factory.
        shutdown_event: Event that signals shutdown.
        logger: Logger instance.
        description: Name of the action, for log lines.
    """
    while not shutdown_event.is_set():
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
            return
        except TimeoutError:
            pass

        try:
            await action()
        except ChatError as e:
            logger.error("Periodic task failed", task=description, error=str(e))


async def main_async(
    config_path: Path,
    shutdown_timeout: float = SHUTDOWN_TIMEOUT,
) -> int:
    """Async main function.

    Args:
        config_path: Path to configuration file.
        shutdown_timeout: Maximum time in seconds to wait for graceful shutdown.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    # 1. Load configuration
    config = load_config(config_path)

    # 2. Initialize logging
    setup_logging(config.logging)
    logger = get_logger(__name__)
    logger.info("Starting chatcore", config_path=str(config_path))

    # 3. Open the database
    database = Database(config.database.url)
    await database.initialize()

    # 4. Initialize components
    channels = SqlChannelRepository(database)
    messages = SqlMessageRepository(database)
    reactions = SqlReactionRepository(database)
    repair_queue = RepairQueue()

    registry = ConnectionRegistry(channels, logger=get_logger("registry"))
    router = FanoutRouter(registry, logger=get_logger("fanout"))
    sequencer = MessageSequencer(channels, logger=get_logger("sequencer"))
    aggregator = ReactionThreadAggregator(
        messages,
        reactions,
        repair_queue,
        logger=get_logger("aggregator"),
        repair_delay=config.aggregates.repair_delay,
    )
    messaging = MessagingService(
        channels,
        messages,
        registry,
        sequencer,
        aggregator,
        router,
        logger=get_logger("messaging"),
        history_page_size=config.realtime.history_page_size,
    )
    http_server = HTTPServer(
        config=config.server,
        realtime=config.realtime,
        messaging=messaging,
        registry=registry,
        logger=get_logger("http_server"),
    )

    # 5. Setup shutdown handling
    running = True
    shutdown_event = asyncio.Event()

    def is_running() -> bool:
        return running

    def signal_handler(sig: signal.Signals) -> None:
        nonlocal running
        logger.info("Received signal, initiating shutdown", signal=sig.name)
        running = False
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler, sig)

    background: list[asyncio.Task[None]] = []
    try:
        # 6. Start HTTP server
        await http_server.start()
        logger.info("chatcore started successfully")

        # 7. Run the repair loop with the periodic sweeps
        background = [
            asyncio.create_task(
                run_periodic(
                    config.realtime.sweep_interval,
                    lambda: registry.expire_idle(config.realtime.idle_timeout),
                    shutdown_event,
                    logger,
                    "expire_idle",
                )
            ),
            asyncio.create_task(
                run_periodic(
                    config.aggregates.reconcile_interval,
                    aggregator.reconcile_all,
                    shutdown_event,
                    logger,
                    "reconcile_aggregates",
                )
            ),
        ]
        await run_main_loop(
            repair_queue=repair_queue,
            aggregator=aggregator,
            shutdown_event=shutdown_event,
            running_check=is_running,
            logger=logger,
        )

    except asyncio.CancelledError:
        logger.info("Main loop cancelled")

    finally:
        # 8. Shutdown
        logger.info("Shutting down")
        shutdown_event.set()
        for task in background:
            task.cancel()
        await asyncio.gather(*background, return_exceptions=True)
        try:
            await asyncio.wait_for(http_server.stop(), timeout=shutdown_timeout)
        except TimeoutError:
            logger.warning(
                "Shutdown timed out, forcing termination",
                timeout_seconds=shutdown_timeout,
            )
        await repair_queue.close()
        await database.close()
        logger.info("chatcore stopped")

    return 0


def main() -> None:
    """Main entry point."""
    args = parse_args()
    config_path = args.config

    try:
        exit_code = asyncio.run(main_async(config_path))
        sys.exit(exit_code)
    except ConfigFileNotFoundError:
        print(f"Error: {config_path} not found", file=sys.stderr)
        sys.exit(1)
    except ConfigError as e:
        print(f"Error: Configuration error: {e}", file=sys.stderr)
        sys.exit(1)
    except ValidationError as e:
        print(f"Error: Configuration validation error: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        sys.exit(0)


if __name__ == "__main__":
    main()
