"""chatcore - Real-time fan-out core for a team chat server."""

__version__ = "0.1.0"
