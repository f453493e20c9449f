"""Logging setup module using structlog."""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager

import structlog
from structlog.stdlib import BoundLogger

from chatcore.config.models import LoggingConfig

# Third-party loggers that are silenced unless running at DEBUG.
QUIET_LOGGERS = ("aiohttp.access", "aiosqlite", "sqlalchemy.engine")


def setup_logging(config: LoggingConfig) -> None:
    """Route stdlib and structlog output through one stdout handler.

    Both kinds of records get the same processors, so an aiohttp or
    SQLAlchemy warning renders like a chatcore event, including any
    connection context bound with `connection_context`.

    Args:
        config: Logging configuration specifying level and format.
    """
    level = getattr(logging, config.level)
    processors = _shared_processors()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=processors,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(config.format),
            ],
        )
    )
    _install_handler(handler, level)

    structlog.configure(
        processors=[
            *processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def _shared_processors() -> list[structlog.typing.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]


def _renderer(log_format: str) -> structlog.typing.Processor:
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer()


def _install_handler(handler: logging.Handler, level: int) -> None:
    root = logging.getLogger()
    root.setLevel(level)
    for existing in root.handlers[:]:
        root.removeHandler(existing)
    root.addHandler(handler)

    if level > logging.DEBUG:
        for name in QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


@contextmanager
def connection_context(connection_id: str, user_id: str) -> Iterator[None]:
    """Tag every log line emitted inside the block with the connection.

    Uses structlog context variables, so the tags follow the current task
    and reach loggers that were never explicitly bound.
    """
    with structlog.contextvars.bound_contextvars(
        connection_id=connection_id, user_id=user_id
    ):
        yield


def get_logger(name: str | None = None) -> BoundLogger:
    """Get a logger instance.

    Args:
        name: Logger name, typically the module name (__name__).

    Returns:
        A bound logger instance that can be used for logging.
    """
    return structlog.stdlib.get_logger(name)
