"""Reference chat gateway: REST history API plus a publish/subscribe websocket."""

from .hub import Subscription, SubscriptionHub
from .server import main
from .store import ChatMessage, ChatStore
from .ws_transport import create_app

__all__ = [
    "ChatMessage",
    "ChatStore",
    "Subscription",
    "SubscriptionHub",
    "create_app",
    "main",
]
