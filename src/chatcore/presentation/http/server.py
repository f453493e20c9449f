"""HTTP server for the chat REST API and WebSocket endpoint."""

import json
from typing import Any

import structlog
from aiohttp import web

from chatcore.application.services.connection_registry import ConnectionRegistry
from chatcore.application.services.messaging import MessagingService
from chatcore.config.models import RealtimeConfig, ServerConfig
from chatcore.domain.entities.aggregates import ReactionOp, ReactionSummary
from chatcore.domain.errors import (
    ChatError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    TransientStoreError,
)
from chatcore.presentation.http.websocket import USER_ID_HEADER, WebSocketHandler


class AuthenticationRequired(Exception):
    """Raised when a request carries no user identifier."""


class InvalidRequest(Exception):
    """Raised when a request body or query is malformed."""


ERROR_STATUS: dict[type[ChatError], int] = {
    ForbiddenError: 403,
    NotFoundError: 404,
    ConflictError: 409,
    TransientStoreError: 503,
}


class HTTPServer:
    """HTTP server for the REST API, the WebSocket endpoint and health checks.

    This server provides endpoints for:
    - GET /healthz: Liveness probe
    - /api/v1/channels...: Channels, members and history
    - /api/v1/messages...: Messages and their edits, deletes, replies and reactions
    - GET /ws: Real-time event stream

    Args:
        config: Server configuration containing host and port.
        realtime: Connection configuration.
        messaging: Messaging service.
        registry: Connection registry, closed on stop.
        logger: Structured logger for logging.
    """

    def __init__(
        self,
        config: ServerConfig,
        realtime: RealtimeConfig,
        messaging: MessagingService,
        registry: ConnectionRegistry,
        logger: structlog.stdlib.BoundLogger,
    ) -> None:
        self.config = config
        self._messaging = messaging
        self._registry = registry
        self._logger = logger
        self._websocket = WebSocketHandler(
            registry, messaging, logger, outbox_size=realtime.outbox_size
        )
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    @property
    def is_running(self) -> bool:
        """Return True if the server is running."""
        return self._site is not None

    @property
    def actual_port(self) -> int:
        """Return the actual port the server is listening on.

        This is useful when port 0 is configured to get a random port.

        Raises:
            RuntimeError: If the server is not running.
        """
        if self._site is None:
            raise RuntimeError("Server is not running")
        server = getattr(self._site, "_server", None)
        if server is None:
            raise RuntimeError("Server is not running")
        sockets = getattr(server, "sockets", None)
        if sockets:
            return sockets[0].getsockname()[1]
        raise RuntimeError("No sockets available")

    def create_app(self) -> web.Application:
        """Create and return the aiohttp Application.

        This method is exposed for testing purposes.

        Returns:
            Configured aiohttp Application.
        """
        app = web.Application(middlewares=[self._error_middleware])
        app.router.add_get("/healthz", self._handle_health_check)
        app.router.add_get("/ws", self._websocket.handle)

        app.router.add_post("/api/v1/channels", self._handle_create_channel)
        app.router.add_get("/api/v1/channels", self._handle_list_channels)
        app.router.add_get(
            "/api/v1/channels/{channel_id}/members", self._handle_list_members
        )
        app.router.add_post(
            "/api/v1/channels/{channel_id}/members", self._handle_add_member
        )
        app.router.add_delete(
            "/api/v1/channels/{channel_id}/members/{user_id}",
            self._handle_remove_member,
        )
        app.router.add_get(
            "/api/v1/channels/{channel_id}/messages", self._handle_history
        )

        app.router.add_post("/api/v1/messages", self._handle_send_message)
        app.router.add_get("/api/v1/messages/{message_id}", self._handle_get_message)
        app.router.add_put(
            "/api/v1/messages/{message_id}", self._handle_edit_message
        )
        app.router.add_delete(
            "/api/v1/messages/{message_id}", self._handle_delete_message
        )
        app.router.add_get(
            "/api/v1/messages/{message_id}/replies", self._handle_replies
        )
        app.router.add_get(
            "/api/v1/messages/{message_id}/reactions", self._handle_list_reactions
        )
        app.router.add_post(
            "/api/v1/messages/{message_id}/reactions", self._handle_add_reaction
        )
        app.router.add_delete(
            "/api/v1/messages/{message_id}/reactions/{emoji_code}",
            self._handle_remove_reaction,
        )
        return app

    async def start(self) -> None:
        """Start the HTTP server."""
        self._app = self.create_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self.config.host, self.config.port)
        await self._site.start()
        self._logger.info(
            "HTTP server started",
            host=self.config.host,
            port=self.actual_port,
        )

    async def stop(self) -> None:
        """Close every live connection, then stop the HTTP server."""
        await self._registry.close_all()
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            self._site = None
            self._app = None
            self._logger.info("HTTP server stopped")

    @web.middleware
    async def _error_middleware(
        self, request: web.Request, handler: Any
    ) -> web.StreamResponse:
        """Map domain errors and malformed requests to JSON error responses."""
        try:
            return await handler(request)
        except AuthenticationRequired:
            return web.json_response({"error": "Authentication required"}, status=401)
        except (InvalidRequest, ValueError) as e:
            return web.json_response({"error": str(e)}, status=400)
        except ChatError as e:
            status = ERROR_STATUS.get(type(e), 500)
            if status >= 500:
                self._logger.warning(
                    "Request failed", path=request.path, error=str(e)
                )
            return web.json_response({"error": str(e)}, status=status)

    async def _handle_health_check(self, request: web.Request) -> web.Response:
        """Handle GET /healthz requests.

        Args:
            request: The incoming request.

        Returns:
            JSON response with status "ok".
        """
        return web.json_response({"status": "ok"})

    async def _handle_create_channel(self, request: web.Request) -> web.Response:
        user_id = _user_id(request)
        body = await _json_body(request)
        name = _required_str(body, "name")
        topic = body.get("topic")
        if topic is not None and not isinstance(topic, str):
            raise InvalidRequest("topic must be a string")

        channel = await self._messaging.create_channel(name, user_id, topic=topic)
        return web.json_response(channel.model_dump(mode="json"), status=201)

    async def _handle_list_channels(self, request: web.Request) -> web.Response:
        channels = await self._messaging.channels_for(_user_id(request))
        return web.json_response(
            {"channels": [c.model_dump(mode="json") for c in channels]}
        )

    async def _handle_list_members(self, request: web.Request) -> web.Response:
        channel_id = request.match_info["channel_id"]
        members = await self._messaging.members(channel_id, _user_id(request))
        return web.json_response(
            {
                "channel_id": channel_id,
                "members": [
                    {"user_id": m.user_id, "joined_at": m.joined_at.isoformat()}
                    for m in members
                ],
            }
        )

    async def _handle_add_member(self, request: web.Request) -> web.Response:
        user_id = _user_id(request)
        body = await _json_body(request)
        member_id = _required_str(body, "user_id")
        channel_id = request.match_info["channel_id"]

        added = await self._messaging.add_member(channel_id, member_id, user_id)
        return web.json_response(
            {"channel_id": channel_id, "user_id": member_id, "added": added},
            status=201 if added else 200,
        )

    async def _handle_remove_member(self, request: web.Request) -> web.Response:
        user_id = _user_id(request)
        channel_id = request.match_info["channel_id"]
        member_id = request.match_info["user_id"]

        removed = await self._messaging.remove_member(channel_id, member_id, user_id)
        if not removed:
            raise NotFoundError(f"Not a member of channel {channel_id}: {member_id}")
        return web.json_response({"channel_id": channel_id, "user_id": member_id})

    async def _handle_history(self, request: web.Request) -> web.Response:
        """Handle GET /api/v1/channels/{channel_id}/messages requests.

        Query parameters `after` (exclusive), `until` (inclusive) and `limit`
        select a sequence range, so clients can backfill a detected gap.
        """
        user_id = _user_id(request)
        channel_id = request.match_info["channel_id"]
        after = _int_query(request, "after", default=0)
        until = _int_query(request, "until")
        limit = _int_query(request, "limit")

        messages = await self._messaging.history(
            channel_id, user_id, after=after or 0, until=until, limit=limit
        )
        return web.json_response(
            {"messages": [message.to_payload() for message in messages]}
        )

    async def _handle_send_message(self, request: web.Request) -> web.Response:
        """Handle POST /api/v1/messages requests.

        The message is persisted before it is pushed, so a 201 response means
        the message is durable and carries its sequence number.
        """
        user_id = _user_id(request)
        body = await _json_body(request)
        channel_id = _required_str(body, "channel_id")
        text = body.get("body")
        if not isinstance(text, str):
            raise InvalidRequest("Missing required field: body")
        parent_id = body.get("parent_id")
        if parent_id is not None and not isinstance(parent_id, str):
            raise InvalidRequest("parent_id must be a string")

        message = await self._messaging.send_message(
            channel_id, user_id, text, parent_id=parent_id
        )
        return web.json_response(message.to_payload(), status=201)

    async def _handle_get_message(self, request: web.Request) -> web.Response:
        message = await self._messaging.get_message(
            request.match_info["message_id"], _user_id(request)
        )
        return web.json_response(message.to_payload())

    async def _handle_edit_message(self, request: web.Request) -> web.Response:
        user_id = _user_id(request)
        body = await _json_body(request)
        text = body.get("body")
        if not isinstance(text, str):
            raise InvalidRequest("Missing required field: body")

        message = await self._messaging.edit_message(
            request.match_info["message_id"], user_id, text
        )
        return web.json_response(message.to_payload())

    async def _handle_delete_message(self, request: web.Request) -> web.Response:
        message_id = request.match_info["message_id"]
        deleted_ids = await self._messaging.delete_message(
            message_id, _user_id(request)
        )
        return web.json_response({"id": message_id, "deleted_ids": deleted_ids})

    async def _handle_replies(self, request: web.Request) -> web.Response:
        replies = await self._messaging.thread_replies(
            request.match_info["message_id"], _user_id(request)
        )
        return web.json_response(
            {"messages": [reply.to_payload() for reply in replies]}
        )

    async def _handle_list_reactions(self, request: web.Request) -> web.Response:
        summaries = await self._messaging.reactions(
            request.match_info["message_id"], _user_id(request)
        )
        return web.json_response({"reactions": [_summary(s) for s in summaries]})

    async def _handle_add_reaction(self, request: web.Request) -> web.Response:
        user_id = _user_id(request)
        body = await _json_body(request)
        emoji_code = _required_str(body, "emoji_code")

        summary = await self._messaging.react(
            request.match_info["message_id"], emoji_code, user_id, ReactionOp.ADD
        )
        return web.json_response(
            _summary(summary), status=201 if summary.changed else 200
        )

    async def _handle_remove_reaction(self, request: web.Request) -> web.Response:
        summary = await self._messaging.react(
            request.match_info["message_id"],
            request.match_info["emoji_code"],
            _user_id(request),
            ReactionOp.REMOVE,
        )
        return web.json_response(_summary(summary))


def _user_id(request: web.Request) -> str:
    user_id = request.headers.get(USER_ID_HEADER, "").strip()
    if not user_id:
        raise AuthenticationRequired()
    return user_id


async def _json_body(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise InvalidRequest("Invalid JSON") from None
    if not isinstance(body, dict):
        raise InvalidRequest("Request body must be a JSON object")
    return body


def _required_str(body: dict[str, Any], field: str) -> str:
    value = body.get(field)
    if not isinstance(value, str) or not value:
        raise InvalidRequest(f"Missing required field: {field}")
    return value


def _int_query(
    request: web.Request, name: str, default: int | None = None
) -> int | None:
    raw = request.query.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise InvalidRequest(f"{name} must be an integer") from None


def _summary(summary: ReactionSummary) -> dict[str, Any]:
    return summary.model_dump(mode="json", exclude={"changed"})
