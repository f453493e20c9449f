"""Single local retry for store operations."""

from collections.abc import Awaitable, Callable
from typing import TypeVar

from structlog.stdlib import BoundLogger

from chatcore.domain.errors import TransientStoreError

T = TypeVar("T")


async def retry_once(
    operation: Callable[[], Awaitable[T]],
    logger: BoundLogger,
    description: str,
    retry_on: tuple[type[Exception], ...] = (TransientStoreError,),
) -> T:
    """Run `operation`, retrying it once if it raises one of `retry_on`.

    A second failure propagates unchanged; the operation must then not be
    assumed to have succeeded.

    Args:
        operation: Zero-argument coroutine factory.
        logger: Logger for the retry notice.
        description: What the operation does, for the log line.
        retry_on: Exception types that warrant the retry.

    Returns:
        The operation's result.
    """
    try:
        return await operation()
    except retry_on as e:
        logger.warning(
            "Store operation failed, retrying once",
            operation=description,
            error=str(e),
        )
        return await operation()
