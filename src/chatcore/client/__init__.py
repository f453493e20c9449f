"""Client-side chat API access and channel reconciliation."""

from chatcore.client.http_client import ChatClient, ChatClientError
from chatcore.client.reconciler import ChannelView, HistorySource, ViewState

__all__ = [
    "ChannelView",
    "ChatClient",
    "ChatClientError",
    "HistorySource",
    "ViewState",
]
