"""Client-side message delivery synchronization engine."""

from chat_client.config import ClientConfig, load_config
from chat_client.contacts import Contact, ContactSynchronizer
from chat_client.conversation import ConversationView, RenderedMessage
from chat_client.engine import ChatEngine
from chat_client.errors import AuthError, ChatClientError, ChatConnectionError, FetchError
from chat_client.session_store import SessionRecord
from chat_client.status_tracker import Message, MessageStatusTracker
from chat_client.transport import ConnectionHandle, TransportChannel

__all__ = [
    "AuthError",
    "ChatClientError",
    "ChatConnectionError",
    "ChatEngine",
    "ClientConfig",
    "ConnectionHandle",
    "Contact",
    "ContactSynchronizer",
    "ConversationView",
    "FetchError",
    "Message",
    "MessageStatusTracker",
    "RenderedMessage",
    "SessionRecord",
    "TransportChannel",
    "load_config",
]
