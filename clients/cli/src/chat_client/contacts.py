"""Contact list synchronization: ordering, presence, previews and unread badges."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from chat_client.api_client import ApiClient
from chat_client.errors import FetchError
from chat_client.formatting import format_contact_time
from chat_client.transport import PRESENCE_OFFLINE, PRESENCE_ONLINE

logger = logging.getLogger(__name__)

EMPTY_PLACEHOLDER = "Search for users to start chatting"


@dataclass
class Contact:
    peer_id: str
    display_name: str
    presence: str = PRESENCE_OFFLINE
    last_message_preview: Optional[str] = None
    last_message_time: Optional[str] = None
    last_message_sender_id: Optional[str] = None
    unread_count: int = 0

    @classmethod
    def from_json(cls, entry: Dict[str, Any]) -> Optional["Contact"]:
        peer_id = entry.get("username")
        if not isinstance(peer_id, str) or not peer_id:
            return None
        try:
            unread = int(entry.get("unreadCount") or 0)
        except (TypeError, ValueError):
            unread = 0
        return cls(
            peer_id=peer_id,
            display_name=str(entry.get("fullName") or peer_id),
            presence=PRESENCE_ONLINE if entry.get("status") == PRESENCE_ONLINE else PRESENCE_OFFLINE,
            last_message_preview=entry.get("lastMessage"),
            last_message_time=entry.get("lastMessageTime"),
            last_message_sender_id=entry.get("lastMessageSenderId"),
            unread_count=max(unread, 0),
        )


@dataclass(frozen=True)
class ContactRow:
    peer_id: str
    display_name: str
    online: bool
    preview: str
    time_label: str
    badge: Optional[str]
    active: bool

    def format(self) -> str:
        marker = ">" if self.active else " "
        dot = "*" if self.online else "o"
        parts = [f"{marker} {dot} {self.display_name} (@{self.peer_id})"]
        if self.badge:
            parts.append(f"[{self.badge}]")
        if self.time_label:
            parts.append(self.time_label)
        line = " ".join(parts)
        if self.preview:
            line += f"\n      {self.preview}"
        return line


def aggregate_backlog(entries: Iterable[Dict[str, Any]]) -> Dict[str, int]:
    """Count undelivered messages per sender."""

    counts: Dict[str, int] = {}
    for entry in entries:
        sender_id = entry.get("senderId")
        if isinstance(sender_id, str) and sender_id:
            counts[sender_id] = counts.get(sender_id, 0) + 1
    return counts


class ContactSynchronizer:
    """Keeps the ordered contact list in step with the history API.

    Every relevant event re-fetches the complete list rather than merging deltas;
    the server order (most recent activity first) is kept as-is. Each refresh takes
    a request token and a response is only applied while its token is the latest.
    """

    def __init__(
        self,
        api: ApiClient,
        self_id: str,
        on_change: Optional[Callable[[List[Contact]], None]] = None,
    ) -> None:
        self.api = api
        self.self_id = self_id
        self.active_peer: Optional[str] = None
        self._on_change = on_change
        self._contacts: List[Contact] = []
        self._token = 0

    @property
    def contacts(self) -> List[Contact]:
        return list(self._contacts)

    def get(self, peer_id: str) -> Optional[Contact]:
        for contact in self._contacts:
            if contact.peer_id == peer_id:
                return contact
        return None

    async def refresh(self) -> bool:
        self._token += 1
        token = self._token
        try:
            entries = await self.api.fetch_contacts(self.self_id)
        except FetchError as exc:
            logger.warning("contact refresh failed: %s", exc)
            return False
        if token != self._token:
            logger.debug("discarding stale contact list (token %d, latest %d)", token, self._token)
            return False

        contacts = []
        for entry in entries:
            contact = Contact.from_json(entry)
            if contact is None or contact.peer_id == self.self_id:
                continue
            if contact.peer_id == self.active_peer:
                contact.unread_count = 0
            contacts.append(contact)
        self._contacts = contacts
        self._changed()
        return True

    def set_active(self, peer_id: Optional[str]) -> None:
        self.active_peer = peer_id
        contact = self.get(peer_id) if peer_id else None
        if contact is not None:
            contact.unread_count = 0
        self._changed()

    def seed_backlog(self, counts: Dict[str, int]) -> Dict[str, int]:
        """Raise badges to the backlog counts; returns what was applied.

        The server's ``unreadCount`` already includes backlog messages, so the seed
        only ever raises a badge. Peers missing from the list are dropped.
        """

        applied: Dict[str, int] = {}
        for peer_id, count in counts.items():
            contact = self.get(peer_id)
            if contact is None:
                logger.debug("dropping backlog count %d for %s: not in contact list", count, peer_id)
                continue
            if peer_id == self.active_peer:
                continue
            contact.unread_count = max(contact.unread_count, count)
            applied[peer_id] = contact.unread_count
        if applied:
            self._changed()
        return applied

    def rows(self, now: Optional[datetime] = None) -> List[ContactRow]:
        rows = []
        for contact in self._contacts:
            preview = contact.last_message_preview or ""
            if preview and contact.last_message_sender_id == self.self_id:
                preview = f"You: {preview}"
            rows.append(
                ContactRow(
                    peer_id=contact.peer_id,
                    display_name=contact.display_name,
                    online=contact.presence == PRESENCE_ONLINE,
                    preview=preview,
                    time_label=format_contact_time(contact.last_message_time, now),
                    badge=str(contact.unread_count) if contact.unread_count > 0 else None,
                    active=contact.peer_id == self.active_peer,
                )
            )
        return rows

    def render(self, now: Optional[datetime] = None) -> List[str]:
        rows = self.rows(now)
        if not rows:
            return [EMPTY_PLACEHOLDER]
        return [row.format() for row in rows]

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change(self.contacts)
