"""Application services: the real-time fan-out core."""

from chatcore.application.services.aggregator import ReactionThreadAggregator
from chatcore.application.services.connection_registry import (
    Connection,
    ConnectionRegistry,
)
from chatcore.application.services.fanout import FanoutRouter
from chatcore.application.services.messaging import MessagingService
from chatcore.application.services.sequencer import MessageSequencer

__all__ = [
    "Connection",
    "ConnectionRegistry",
    "FanoutRouter",
    "MessageSequencer",
    "MessagingService",
    "ReactionThreadAggregator",
]
