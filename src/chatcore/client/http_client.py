"""aiohttp client for the chat REST API and event stream."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import aiohttp
from structlog.stdlib import BoundLogger

from chatcore.client.reconciler import ChannelView

EventCallback = Callable[[dict[str, Any]], Awaitable[None]]


class ChatClientError(Exception):
    """Raised when the server answers a request with an error status."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(f"{status}: {message}")
        self.status = status
        self.message = message


class ChatClient:
    """Client for one user, driving channel views from the event stream.

    Implements `HistorySource`, so the views it creates backfill through the
    REST history endpoint.

    Args:
        base_url: Server URL, e.g. "http://localhost:8080".
        user_id: Identifier sent as the authenticated user.
        session: aiohttp session owned by the caller.
        logger: Structured logger.
    """

    def __init__(
        self,
        base_url: str,
        user_id: str,
        session: aiohttp.ClientSession,
        logger: BoundLogger,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self.user_id = user_id
        self._session = session
        self._logger = logger.bind(user_id=user_id)
        self._views: dict[str, ChannelView] = {}
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._closing = False

    def view(self, channel_id: str) -> ChannelView:
        """Return the channel's view, creating it on first use."""
        if channel_id not in self._views:
            self._views[channel_id] = ChannelView(channel_id, self, self._logger)
        return self._views[channel_id]

    async def fetch_messages(
        self, channel_id: str, after: int, until: int | None = None
    ) -> list[dict[str, Any]]:
        """Fetch every message with `after < sequence <= until`, page by page."""
        messages: list[dict[str, Any]] = []
        cursor = after
        while True:
            params = {"after": str(cursor)}
            if until is not None:
                params["until"] = str(until)
            data = await self._request(
                "GET", f"/api/v1/channels/{channel_id}/messages", params=params
            )
            page = data["messages"]
            if not page:
                return messages
            messages.extend(page)
            cursor = page[-1]["sequence"]
            if until is not None and cursor >= until:
                return messages

    async def create_channel(
        self, name: str, topic: str | None = None
    ) -> dict[str, Any]:
        return await self._request(
            "POST", "/api/v1/channels", json={"name": name, "topic": topic}
        )

    async def add_member(self, channel_id: str, user_id: str) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"/api/v1/channels/{channel_id}/members",
            json={"user_id": user_id},
        )

    async def send_message(
        self, channel_id: str, body: str, parent_id: str | None = None
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"channel_id": channel_id, "body": body}
        if parent_id is not None:
            payload["parent_id"] = parent_id
        return await self._request("POST", "/api/v1/messages", json=payload)

    async def edit_message(self, message_id: str, body: str) -> dict[str, Any]:
        return await self._request(
            "PUT", f"/api/v1/messages/{message_id}", json={"body": body}
        )

    async def delete_message(self, message_id: str) -> dict[str, Any]:
        return await self._request("DELETE", f"/api/v1/messages/{message_id}")

    async def members(self, channel_id: str) -> list[dict[str, Any]]:
        data = await self._request("GET", f"/api/v1/channels/{channel_id}/members")
        return data["members"]

    async def react(self, message_id: str, emoji_code: str) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"/api/v1/messages/{message_id}/reactions",
            json={"emoji_code": emoji_code},
        )

    async def unreact(self, message_id: str, emoji_code: str) -> dict[str, Any]:
        return await self._request(
            "DELETE", f"/api/v1/messages/{message_id}/reactions/{emoji_code}"
        )

    async def listen(
        self,
        on_event: EventCallback | None = None,
        reconnect_delay: float = 1.0,
        ping_interval: float = 30.0,
    ) -> None:
        """Consume the event stream until `close()` is called.

        On every (re)connect each view is subscribed, and synced only once
        the server acknowledges the subscription with `subscribed`. Anything
        sent after the acknowledgement is pushed, and anything before it is
        in the synced history. Message, edit and delete events go to the
        matching view; every event is then passed to `on_event`.

        Args:
            on_event: Optional callback for every received event.
            reconnect_delay: Seconds to wait before reconnecting.
            ping_interval: Seconds between keepalive pings. Keep it below the
                server's idle timeout.
        """
        connected_before = False
        while not self._closing:
            try:
                async with self._session.ws_connect(
                    f"{self._base_url}/ws", params={"user_id": self.user_id}
                ) as ws:
                    self._ws = ws
                    resync, connected_before = connected_before, True
                    keepalive = asyncio.create_task(self._keepalive(ws, ping_interval))
                    try:
                        pending = await self._resubscribe(ws)
                        await self._consume(ws, on_event, pending, resync)
                    finally:
                        keepalive.cancel()
                        try:
                            await keepalive
                        except asyncio.CancelledError:
                            pass
            except (aiohttp.ClientError, ChatClientError) as e:
                self._logger.warning("Event stream failed", error=str(e))
            finally:
                self._ws = None

            if not self._closing:
                self._logger.info("Reconnecting event stream", delay=reconnect_delay)
                await asyncio.sleep(reconnect_delay)

    async def close(self) -> None:
        """Stop `listen()` and close the event stream."""
        self._closing = True
        if self._ws is not None:
            await self._ws.close()

    async def _resubscribe(self, ws: aiohttp.ClientWebSocketResponse) -> set[str]:
        pending: set[str] = set()
        for channel_id in self._views:
            await ws.send_json({"type": "subscribe", "channel_id": channel_id})
            pending.add(channel_id)
        return pending

    async def _keepalive(
        self, ws: aiohttp.ClientWebSocketResponse, interval: float
    ) -> None:
        while not ws.closed:
            await asyncio.sleep(interval)
            try:
                await ws.send_json({"type": "ping"})
            except (ConnectionError, aiohttp.ClientError):
                return

    async def _consume(
        self,
        ws: aiohttp.ClientWebSocketResponse,
        on_event: EventCallback | None,
        pending: set[str],
        resync: bool,
    ) -> None:
        async for msg in ws:
            if msg.type != aiohttp.WSMsgType.TEXT:
                continue
            event = msg.json()
            channel_id = event.get("channel_id")
            view = self._views.get(channel_id)
            if view is not None and channel_id in pending:
                await self._acknowledge(view, event, pending, resync)
            elif view is not None:
                await self._apply(view, event)
            if on_event is not None:
                await on_event(event)

    async def _acknowledge(
        self,
        view: ChannelView,
        event: dict[str, Any],
        pending: set[str],
        resync: bool,
    ) -> None:
        if event.get("type") == "subscribed":
            pending.discard(view.channel_id)
            if resync:
                await view.reconnect()
            else:
                await view.sync()
        elif event.get("type") == "error":
            pending.discard(view.channel_id)
            self._logger.warning(
                "Subscribe rejected",
                channel_id=view.channel_id,
                error=event.get("payload", {}).get("error"),
            )

    async def _apply(self, view: ChannelView, event: dict[str, Any]) -> None:
        event_type = event.get("type")
        if event_type == "message_updated":
            await view.on_update(event["payload"])
        elif event_type == "message_deleted":
            await view.on_delete(event["payload"]["deleted_ids"])
        elif event_type == "message":
            try:
                await view.on_push(event["payload"])
            except (aiohttp.ClientError, ChatClientError) as e:
                # The next push retries the gap fetch.
                self._logger.warning(
                    "Push not applied",
                    channel_id=view.channel_id,
                    error=str(e),
                )

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        headers = {"X-User-Id": self.user_id}
        async with self._session.request(
            method, f"{self._base_url}{path}", headers=headers, **kwargs
        ) as response:
            data = await response.json()
            if response.status >= 400:
                raise ChatClientError(response.status, data.get("error", ""))
            return data
