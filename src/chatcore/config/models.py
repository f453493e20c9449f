"""Pydantic models for application configuration."""

from typing import Literal

from pydantic import BaseModel, Field


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    host: str = "0.0.0.0"
    port: int = 8080


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    format: Literal["json", "text"] = "json"


class DatabaseConfig(BaseModel):
    """Database connection configuration."""

    url: str = Field(
        default="sqlite+aiosqlite:///./data/chatcore.db",
        description=(
            "SQLAlchemy-style database connection URL "
            "(e.g., 'sqlite+aiosqlite:///path/to/db')."
        ),
    )


class RealtimeConfig(BaseModel):
    """Connection registry and fan-out configuration."""

    outbox_size: int = Field(
        default=256,
        gt=0,
        description=(
            "Maximum number of undelivered events buffered per connection. "
            "Events published while the buffer is full are dropped for that "
            "connection."
        ),
    )
    idle_timeout: float = Field(
        default=300.0,
        gt=0,
        description="Seconds without inbound traffic before a connection expires.",
    )
    sweep_interval: float = Field(
        default=30.0,
        gt=0,
        description="Seconds between idle-connection sweeps.",
    )
    history_page_size: int = Field(
        default=200,
        gt=0,
        description="Default and maximum number of messages per history request.",
    )


class AggregatesConfig(BaseModel):
    """Reaction/thread aggregate maintenance configuration."""

    repair_delay: float = Field(
        default=1.0,
        ge=0,
        description=(
            "Delay in seconds before recomputing an aggregate whose "
            "incremental update failed."
        ),
    )
    reconcile_interval: float = Field(
        default=600.0,
        gt=0,
        description="Seconds between full aggregate recomputation passes.",
    )


class AppConfig(BaseModel):
    """Application configuration."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    realtime: RealtimeConfig = Field(default_factory=RealtimeConfig)
    aggregates: AggregatesConfig = Field(default_factory=AggregatesConfig)
