"""Projection of the active conversation and the read-receipt trigger."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from chat_client.api_client import ApiClient
from chat_client.errors import FetchError
from chat_client.formatting import tooltip
from chat_client.status_tracker import (
    STATUS_DELIVERED,
    STATUS_READ,
    STATUS_SENT,
    Message,
    MessageStatusTracker,
)
from chat_client.transport import CHAT, CHAT_READ, TransportChannel

logger = logging.getLogger(__name__)

INDICATOR_TITLES = {STATUS_SENT: "Sent", STATUS_DELIVERED: "Delivered", STATUS_READ: "Read"}
INDICATOR_GLYPHS = {STATUS_SENT: "✓", STATUS_DELIVERED: "✓✓", STATUS_READ: "✓✓ read"}


@dataclass(frozen=True)
class RenderedMessage:
    message_id: str
    outgoing: bool
    content: str
    # Only self-sent messages carry a status indicator.
    status: Optional[str]
    tooltip: str

    @property
    def indicator(self) -> Optional[str]:
        return INDICATOR_TITLES[self.status] if self.status else None

    def format(self) -> str:
        if self.status is None:
            return f"  < {self.content}"
        return f"  > {self.content}  {INDICATOR_GLYPHS[self.status]}"


def render_message(message: Message, self_id: str, now: Optional[datetime] = None) -> RenderedMessage:
    return RenderedMessage(
        message_id=message.id,
        outgoing=message.sender_id == self_id,
        content=message.content,
        status=message.status if message.sender_id == self_id else None,
        tooltip=tooltip(message.sent_at, message.read_at, now),
    )


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ConversationView:
    """Renders the active peer's messages from the tracker.

    The only state held here is the active peer and the request token used to
    discard history responses that arrive after the user switched away.
    """

    def __init__(
        self,
        tracker: MessageStatusTracker,
        api: ApiClient,
        transport: TransportChannel,
        *,
        on_render: Optional[Callable[[List[RenderedMessage]], None]] = None,
        on_update: Optional[Callable[[List[RenderedMessage]], None]] = None,
    ) -> None:
        self.tracker = tracker
        self.api = api
        self.transport = transport
        self.self_id = tracker.self_id
        self.active_peer: Optional[str] = None
        self.active_name: Optional[str] = None
        self._on_render = on_render
        self._on_update = on_update
        self._token = 0

    def render(self, now: Optional[datetime] = None) -> List[RenderedMessage]:
        if self.active_peer is None or self.tracker.peer_id != self.active_peer:
            return []
        return [render_message(message, self.self_id, now) for message in self.tracker.messages]

    async def open(self, peer_id: str, display_name: Optional[str] = None) -> bool:
        """Switch to ``peer_id`` and load its history; False when nothing was applied."""

        self.active_peer = peer_id
        self.active_name = display_name or peer_id
        self._token += 1
        token = self._token
        self.tracker.begin(peer_id)
        try:
            entries = await self.api.fetch_messages(self.self_id, peer_id)
        except FetchError as exc:
            logger.warning("history fetch for %s failed: %s", peer_id, exc)
            return False
        if token != self._token or self.active_peer != peer_id:
            logger.debug("discarding stale history for %s", peer_id)
            return False

        messages = self.tracker.load_history(peer_id, entries)
        self._emit_render()
        if any(m.sender_id == peer_id and m.status != STATUS_READ for m in messages):
            await self.send_read_receipt(peer_id)
        return True

    def close(self) -> None:
        self.active_peer = None
        self.active_name = None
        self._token += 1
        self.tracker.reset()

    async def send(self, content: str) -> Optional[Message]:
        text = content.strip()
        if not text or self.active_peer is None:
            return None
        sent_at = _utc_now_iso()
        message = self.tracker.record_local_send(self.active_peer, text, sent_at)
        self._emit_render()
        await self.transport.publish(
            CHAT,
            {
                "senderId": self.self_id,
                "recipientId": self.active_peer,
                "content": text,
                "timestamp": sent_at,
                "clientId": message.id,
            },
        )
        return message

    async def on_incoming(self, payload: Dict[str, Any]) -> bool:
        """Render a live message when it belongs to the active conversation."""

        sender_id = payload.get("senderId")
        if self.active_peer is None or sender_id != self.active_peer:
            return False
        self.tracker.add_incoming(payload)
        self._emit_render()
        await self.send_read_receipt(sender_id)
        return True

    def apply_status(self, update: Dict[str, Any]) -> List[RenderedMessage]:
        changed = self.tracker.apply_status(update)
        rendered = [render_message(message, self.self_id) for message in changed]
        if rendered and self._on_update is not None:
            self._on_update(rendered)
        return rendered

    async def send_read_receipt(self, peer_id: str) -> None:
        await self.transport.publish(CHAT_READ, {"senderId": peer_id, "recipientId": self.self_id})

    def _emit_render(self) -> None:
        if self._on_render is not None:
            self._on_render(self.render())
