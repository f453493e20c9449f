"""WebSocket endpoint: connection lifecycle and inbound frames."""

import json
from typing import Any

from aiohttp import WSMsgType, web
from structlog.stdlib import BoundLogger

from chatcore.application.services.connection_registry import (
    Connection,
    ConnectionRegistry,
)
from chatcore.application.services.messaging import MessagingService
from chatcore.domain.entities.event import EventType, RealtimeEvent, error_event
from chatcore.domain.errors import ChatError
from chatcore.infrastructure.logging import connection_context

USER_ID_HEADER = "X-User-Id"
HEARTBEAT_SECONDS = 30.0


class WebSocketTransport:
    """Transport backed by an aiohttp WebSocketResponse."""

    def __init__(self, ws: web.WebSocketResponse) -> None:
        self._ws = ws

    async def send(self, data: dict[str, Any]) -> None:
        await self._ws.send_json(data)

    async def close(self) -> None:
        if not self._ws.closed:
            await self._ws.close()


class WebSocketHandler:
    """Serves `GET /ws`.

    Inbound frames are JSON objects:
    - {"type": "subscribe", "channel_id": ...}
    - {"type": "unsubscribe", "channel_id": ...}
    - {"type": "typing", "channel_id": ...}
    - {"type": "ping"}

    Replies and errors go through the connection's outbox, behind any events
    already queued for it.

    Args:
        registry: Connection registry.
        messaging: Messaging service.
        logger: Structured logger.
        outbox_size: Outbound queue bound per connection.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        messaging: MessagingService,
        logger: BoundLogger,
        outbox_size: int,
    ) -> None:
        self._registry = registry
        self._messaging = messaging
        self._logger = logger
        self._outbox_size = outbox_size

    async def handle(self, request: web.Request) -> web.StreamResponse:
        """Upgrade the request and serve the connection until it closes."""
        user_id = request.query.get("user_id") or request.headers.get(USER_ID_HEADER)
        if not user_id:
            return web.json_response({"error": "Authentication required"}, status=401)

        # Keepalive frames reach the loop so that they count as activity.
        ws = web.WebSocketResponse(heartbeat=HEARTBEAT_SECONDS, autoping=False)
        await ws.prepare(request)

        connection = Connection(WebSocketTransport(ws), outbox_size=self._outbox_size)
        with connection_context(connection.id, user_id):
            # The writer task inherits the bound context.
            self._registry.register(connection, user_id)
            try:
                async for msg in ws:
                    if msg.type == WSMsgType.TEXT:
                        connection.touch()
                        await self._handle_frame(connection, msg.data)
                    elif msg.type == WSMsgType.PING:
                        connection.touch()
                        await ws.pong(msg.data)
                    elif msg.type == WSMsgType.PONG:
                        connection.touch()
                    elif msg.type == WSMsgType.ERROR:
                        self._logger.warning(
                            "WebSocket closed with error",
                            error=str(ws.exception()),
                        )
            finally:
                await self._messaging.disconnect(connection)
        return ws

    async def _handle_frame(self, connection: Connection, raw: str) -> None:
        try:
            frame = json.loads(raw)
        except json.JSONDecodeError:
            connection.offer(error_event("Invalid JSON"))
            return
        if not isinstance(frame, dict) or "type" not in frame:
            connection.offer(error_event("Missing required field: type"))
            return

        frame_type = frame["type"]
        channel_id = frame.get("channel_id")
        if frame_type == "ping":
            connection.offer(RealtimeEvent(type=EventType.PONG))
            return
        if frame_type not in ("subscribe", "unsubscribe", "typing"):
            connection.offer(error_event(f"Invalid frame type: {frame_type}"))
            return
        if not isinstance(channel_id, str) or not channel_id:
            connection.offer(error_event("Missing required field: channel_id"))
            return

        try:
            if frame_type == "subscribe":
                await self._messaging.subscribe(connection, channel_id)
                connection.offer(
                    RealtimeEvent(type=EventType.SUBSCRIBED, channel_id=channel_id)
                )
            elif frame_type == "unsubscribe":
                self._registry.unsubscribe(connection.id, channel_id)
                connection.offer(
                    RealtimeEvent(type=EventType.UNSUBSCRIBED, channel_id=channel_id)
                )
            else:
                self._messaging.typing(connection, channel_id)
        except ChatError as e:
            self._logger.info(
                "WebSocket frame rejected",
                frame_type=frame_type,
                channel_id=channel_id,
                error=str(e),
            )
            connection.offer(error_event(str(e), channel_id=channel_id))
