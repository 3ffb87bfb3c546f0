"""Per-message delivery state for the active conversation.

Statuses only move forward: SENT -> DELIVERED -> READ. Messages sent from this
client start with a provisional ``local-`` id and are re-keyed to the server id
as soon as a status push identifies them, either directly through the echoed
``clientId`` or, failing that, by matching the oldest pending send to the same
recipient.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

STATUS_SENT = "SENT"
STATUS_DELIVERED = "DELIVERED"
STATUS_READ = "READ"

_STATUS_RANK = {STATUS_SENT: 0, STATUS_DELIVERED: 1, STATUS_READ: 2}

PROVISIONAL_PREFIX = "local-"


def new_provisional_id() -> str:
    return f"{PROVISIONAL_PREFIX}{secrets.token_hex(8)}"


def normalize_status(value: object) -> Optional[str]:
    if not isinstance(value, str):
        return None
    status = value.upper()
    return status if status in _STATUS_RANK else None


@dataclass
class Message:
    id: str
    sender_id: str
    recipient_id: str
    content: str
    status: str
    sent_at: Optional[str] = None
    read_at: Optional[str] = None
    provisional: bool = False


class MessageStatusTracker:
    """Owns the working set of messages for one conversation and the id index over it."""

    def __init__(self, self_id: str) -> None:
        self.self_id = self_id
        self.peer_id: Optional[str] = None
        self._messages: List[Message] = []
        self._index: Dict[str, Message] = {}
        # peer id -> provisional ids of self-sent messages still awaiting a server id, oldest first
        self._pending: Dict[str, List[str]] = {}

    @property
    def messages(self) -> List[Message]:
        return list(self._messages)

    def get(self, message_id: str) -> Optional[Message]:
        return self._index.get(message_id)

    def pending_for(self, peer_id: str) -> List[str]:
        return list(self._pending.get(peer_id, []))

    def reset(self) -> None:
        self.peer_id = None
        self._messages = []
        self._index = {}
        self._pending = {}

    def begin(self, peer_id: str) -> None:
        """Switch the working set to ``peer_id`` ahead of its history.

        Sends and live messages recorded from here on join the working set and
        survive the history load. Provisional sends to other peers stay indexed
        so their status pushes can still re-key them.
        """

        self.peer_id = peer_id
        self._messages = []
        self._index = {key: m for key, m in self._index.items() if m.provisional}

    def load_history(self, peer_id: str, entries: List[Dict[str, Any]]) -> List[Message]:
        """Rebuild the working set from a fetched history.

        Messages recorded since :meth:`begin` are merged in by id: a history entry
        echoing a pending send's ``clientId`` replaces it, anything the history
        does not contain yet is kept after it.
        """

        if self.peer_id != peer_id:
            self.begin(peer_id)
        live = self._messages
        self._messages = []
        self._index = {key: m for key, m in self._index.items() if m.provisional}
        for entry in entries:
            sender_id = str(entry.get("senderId") or "")
            if not sender_id or entry.get("id") is None:
                logger.debug("skipping history entry without id or sender: %r", entry)
                continue
            recipient_id = entry.get("recipientId")
            if not isinstance(recipient_id, str) or not recipient_id:
                recipient_id = peer_id if sender_id == self.self_id else self.self_id
            message = Message(
                id=str(entry["id"]),
                sender_id=sender_id,
                recipient_id=recipient_id,
                content=str(entry.get("content") or ""),
                status=normalize_status(entry.get("status")) or STATUS_DELIVERED,
                sent_at=entry.get("timeStamp") or entry.get("timestamp"),
                read_at=entry.get("readTimestamp"),
            )
            client_id = entry.get("clientId")
            claimed = self._index.get(client_id) if isinstance(client_id, str) else None
            if claimed is not None:
                self._forget_pending(claimed.recipient_id, claimed.id)
                del self._index[claimed.id]
            self._messages.append(message)
            self._index[message.id] = message

        for message in live:
            existing = self._index.get(message.id)
            if existing is message:
                # still pending and not in the fetched history
                self._messages.append(message)
            elif existing is not None:
                self._advance(existing, message.status, message.read_at)
            elif not message.provisional:
                self._messages.append(message)
                self._index[message.id] = message
        return self.messages

    def record_local_send(self, recipient_id: str, content: str, sent_at: str) -> Message:
        message = Message(
            id=new_provisional_id(),
            sender_id=self.self_id,
            recipient_id=recipient_id,
            content=content,
            status=STATUS_SENT,
            sent_at=sent_at,
            provisional=True,
        )
        if self.peer_id == recipient_id:
            self._messages.append(message)
        self._index[message.id] = message
        self._pending.setdefault(recipient_id, []).append(message.id)
        return message

    def add_incoming(self, payload: Dict[str, Any]) -> Optional[Message]:
        """Append a live message from the active peer; duplicates of indexed ids are ignored."""

        message_id = payload.get("id")
        sender_id = payload.get("senderId")
        if message_id is None or not isinstance(sender_id, str):
            return None
        existing = self._index.get(str(message_id))
        if existing is not None:
            return existing
        message = Message(
            id=str(message_id),
            sender_id=sender_id,
            recipient_id=self.self_id,
            content=str(payload.get("content") or ""),
            status=STATUS_DELIVERED,
            sent_at=payload.get("timestamp") or payload.get("timeStamp"),
        )
        self._messages.append(message)
        self._index[message.id] = message
        return message

    def apply_status(self, update: Dict[str, Any]) -> List[Message]:
        """Apply a status push and return the messages whose state changed."""

        status = normalize_status(update.get("status"))
        if status is None:
            logger.debug("ignoring status push with unknown status: %r", update)
            return []
        message_id = str(update["id"]) if update.get("id") is not None else ""
        client_id = update.get("clientId")
        peer_id = update.get("recipientId")
        read_at = update.get("readTimestamp")

        message = self._index.get(message_id) if message_id else None
        if message is not None:
            return [message] if self._advance(message, status, read_at) else []

        if isinstance(client_id, str):
            message = self._rebind(client_id, message_id)
        if message is None and message_id and isinstance(peer_id, str):
            message = self._bind_oldest_pending(peer_id, message_id)

        # A read receipt is conversation-wide: the peer has seen everything we sent.
        if status == STATUS_READ and peer_id is not None and peer_id == self.peer_id:
            return self._upgrade_conversation_to_read(read_at)
        if message is None:
            logger.debug("status %s for untracked message %s", status, message_id or client_id)
            return []
        return [message] if self._advance(message, status, read_at) else []

    def _advance(self, message: Message, status: str, read_at: Optional[str]) -> bool:
        if _STATUS_RANK[status] < _STATUS_RANK[message.status]:
            logger.debug("refusing %s -> %s for message %s", message.status, status, message.id)
            return False
        changed = status != message.status
        message.status = status
        if status == STATUS_READ and read_at and read_at != message.read_at:
            message.read_at = read_at
            changed = True
        return changed

    def _rebind(self, provisional_id: str, server_id: str) -> Optional[Message]:
        message = self._index.get(provisional_id)
        if message is None or not message.provisional:
            return None
        if server_id and server_id in self._index:
            return self._index[server_id]
        self._forget_pending(message.recipient_id, provisional_id)
        if server_id:
            del self._index[provisional_id]
            message.id = server_id
            message.provisional = False
            self._index[server_id] = message
        return message

    def _bind_oldest_pending(self, peer_id: str, server_id: str) -> Optional[Message]:
        pending = self._pending.get(peer_id)
        if not pending:
            return None
        return self._rebind(pending[0], server_id)

    def _forget_pending(self, peer_id: str, provisional_id: str) -> None:
        pending = self._pending.get(peer_id)
        if not pending:
            return
        try:
            pending.remove(provisional_id)
        except ValueError:
            return
        if not pending:
            self._pending.pop(peer_id, None)

    def _upgrade_conversation_to_read(self, read_at: Optional[str]) -> List[Message]:
        changed = []
        for message in self._messages:
            if message.sender_id != self.self_id:
                continue
            if self._advance(message, STATUS_READ, read_at):
                changed.append(message)
        return changed
