"""Configuration module for chatcore."""

from chatcore.config.loader import (
    ConfigError,
    ConfigFileNotFoundError,
    ConfigParseError,
    EnvVarNotFoundError,
    load_config,
)
from chatcore.config.models import (
    AggregatesConfig,
    AppConfig,
    DatabaseConfig,
    LoggingConfig,
    RealtimeConfig,
    ServerConfig,
)

__all__ = [
    # Exceptions
    "ConfigError",
    "ConfigFileNotFoundError",
    "ConfigParseError",
    "EnvVarNotFoundError",
    # Functions
    "load_config",
    # Models
    "AggregatesConfig",
    "AppConfig",
    "DatabaseConfig",
    "LoggingConfig",
    "RealtimeConfig",
    "ServerConfig",
]
