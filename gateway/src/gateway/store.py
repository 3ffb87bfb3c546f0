from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional

STATUS_ONLINE = "ONLINE"
STATUS_OFFLINE = "OFFLINE"

MESSAGE_SENT = "SENT"
MESSAGE_DELIVERED = "DELIVERED"
MESSAGE_READ = "READ"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _digest(password: str, salt: bytes) -> str:
    return hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, 100_000).hex()


class AuthFailed(Exception):
    pass


@dataclass
class User:
    username: str
    full_name: str
    salt: bytes
    password_digest: str
    status: str = STATUS_OFFLINE

    def to_json(self) -> Dict[str, str]:
        return {"username": self.username, "fullName": self.full_name, "status": self.status}


@dataclass
class ChatMessage:
    """A persisted direct message between two users."""

    id: str
    chat_id: str
    sender_id: str
    recipient_id: str
    content: str
    status: str
    time_stamp: str
    read_timestamp: Optional[str] = None
    client_id: Optional[str] = None

    def to_json(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "id": self.id,
            "chatId": self.chat_id,
            "senderId": self.sender_id,
            "recipientId": self.recipient_id,
            "content": self.content,
            "status": self.status,
            "timeStamp": self.time_stamp,
            "readTimestamp": self.read_timestamp,
        }
        if self.client_id:
            payload["clientId"] = self.client_id
        return payload


def chat_id_for(first: str, second: str) -> str:
    low, high = sorted((first, second))
    return f"{low}_{high}"


class ChatStore:
    """In-memory users, bearer tokens and direct-message history."""

    def __init__(self) -> None:
        self._users: Dict[str, User] = {}
        self._tokens: Dict[str, str] = {}
        self._messages: List[ChatMessage] = []
        self._by_chat: Dict[str, List[ChatMessage]] = {}
        self._partners: Dict[str, List[str]] = {}
        self._next_id = 1

    # -- accounts -----------------------------------------------------------

    def register(self, username: str, full_name: str, password: str) -> str:
        username = username.strip()
        if not username or not password:
            raise AuthFailed("Username and password are required")
        if username in self._users:
            raise AuthFailed("Username already exists")
        salt = secrets.token_bytes(16)
        self._users[username] = User(
            username=username,
            full_name=full_name.strip() or username,
            salt=salt,
            password_digest=_digest(password, salt),
        )
        return self._issue_token(username)

    def login(self, username: str, password: str) -> str:
        user = self._users.get(username.strip())
        if user is None or not secrets.compare_digest(_digest(password, user.salt), user.password_digest):
            raise AuthFailed("Invalid username or password")
        return self._issue_token(user.username)

    def _issue_token(self, username: str) -> str:
        token = f"tk_{secrets.token_urlsafe(24)}"
        self._tokens[token] = username
        return token

    def user_for_token(self, token: str) -> User | None:
        username = self._tokens.get(token)
        if username is None:
            return None
        return self._users.get(username)

    def get_user(self, username: str) -> User | None:
        return self._users.get(username)

    def search(self, query: str) -> List[User]:
        needle = query.strip().lower()
        if not needle:
            return []
        return [
            user
            for user in sorted(self._users.values(), key=lambda u: u.username)
            if needle in user.username.lower() or needle in user.full_name.lower()
        ]

    def set_status(self, username: str, status: str) -> User | None:
        user = self._users.get(username)
        if user is not None:
            user.status = status
        return user

    def is_online(self, username: str) -> bool:
        user = self._users.get(username)
        return user is not None and user.status == STATUS_ONLINE

    # -- messages -----------------------------------------------------------

    def save_message(
        self,
        sender_id: str,
        recipient_id: str,
        content: str,
        client_id: Optional[str] = None,
    ) -> ChatMessage:
        """Persist a message; status is DELIVERED only when the recipient is online."""

        chat_id = chat_id_for(sender_id, recipient_id)
        message = ChatMessage(
            id=str(self._next_id),
            chat_id=chat_id,
            sender_id=sender_id,
            recipient_id=recipient_id,
            content=content,
            status=MESSAGE_DELIVERED if self.is_online(recipient_id) else MESSAGE_SENT,
            time_stamp=_now_iso(),
            client_id=client_id,
        )
        self._next_id += 1
        self._messages.append(message)
        self._by_chat.setdefault(chat_id, []).append(message)
        self._remember_partner(sender_id, recipient_id)
        self._remember_partner(recipient_id, sender_id)
        return message

    def _remember_partner(self, user_id: str, partner_id: str) -> None:
        partners = self._partners.setdefault(user_id, [])
        if partner_id not in partners:
            partners.append(partner_id)

    def chat_messages(self, first: str, second: str) -> List[ChatMessage]:
        return list(self._by_chat.get(chat_id_for(first, second), []))

    def undelivered(self, recipient_id: str) -> List[ChatMessage]:
        return [m for m in self._messages if m.recipient_id == recipient_id and m.status == MESSAGE_SENT]

    def mark_delivered(self, messages: List[ChatMessage]) -> None:
        for message in messages:
            if message.status == MESSAGE_SENT:
                message.status = MESSAGE_DELIVERED

    def mark_read(self, sender_id: str, recipient_id: str) -> List[ChatMessage]:
        """Mark every non-READ message from sender to recipient as READ and return them."""

        read_at = _now_iso()
        updated: List[ChatMessage] = []
        for message in self._by_chat.get(chat_id_for(sender_id, recipient_id), []):
            if message.sender_id != sender_id or message.status == MESSAGE_READ:
                continue
            message.status = MESSAGE_READ
            message.read_timestamp = read_at
            updated.append(message)
        return updated

    def contacts(self, user_id: str) -> List[Dict[str, object]]:
        """Return chat partners ordered by most recent message first."""

        ranked: List[tuple[int, Dict[str, object]]] = []
        for partner_id in self._partners.get(user_id, []):
            partner = self._users.get(partner_id)
            if partner is None:
                continue
            history = self._by_chat.get(chat_id_for(user_id, partner_id), [])
            last = history[-1] if history else None
            unread = sum(
                1 for m in history if m.sender_id == partner_id and m.recipient_id == user_id and m.status != MESSAGE_READ
            )
            contact: Dict[str, object] = {
                "username": partner.username,
                "fullName": partner.full_name,
                "status": partner.status,
                "lastMessage": last.content if last else None,
                "lastMessageSenderId": last.sender_id if last else None,
                "lastMessageTime": last.time_stamp if last else None,
                "unreadCount": unread,
            }
            ranked.append((int(last.id) if last else 0, contact))
        # Message ids grow with time, so they order ties in timestamps too.
        ranked.sort(key=lambda item: item[0], reverse=True)
        return [contact for _, contact in ranked]
