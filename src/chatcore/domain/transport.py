"""Transport protocol for a single live client connection."""

from typing import Any, Protocol


class Transport(Protocol):
    """Bidirectional message channel to one client (WebSocket or equivalent)."""

    async def send(self, data: dict[str, Any]) -> None:
        """Send one JSON-ready event to the client."""
        ...

    async def close(self) -> None:
        """Close the connection. Must be safe to call more than once."""
        ...
