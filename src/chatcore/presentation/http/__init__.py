"""HTTP and WebSocket surface."""

from chatcore.presentation.http.server import HTTPServer

__all__ = ["HTTPServer"]
