"""Wires transport events to the status tracker, contact list and conversation view."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import aiohttp

from chat_client.api_client import ApiClient
from chat_client.config import ClientConfig
from chat_client.contacts import Contact, ContactSynchronizer, aggregate_backlog
from chat_client.conversation import ConversationView, RenderedMessage
from chat_client.errors import ChatConnectionError, FetchError
from chat_client.session_store import SessionRecord, clear_session
from chat_client.status_tracker import Message, MessageStatusTracker
from chat_client.transport import (
    PRESENCE_ONLINE,
    PUBLIC_TOPIC,
    ConnectionHandle,
    TransportChannel,
    inbox_destination,
    status_destination,
)

logger = logging.getLogger(__name__)

CONNECTION_BANNER = "Could not connect to the chat server. Please restart to try again!"

EventListener = Callable[[str, Any], None]


class Debouncer:
    """Runs ``callback(value)`` once input has been quiet for ``delay_s``."""

    def __init__(self, delay_s: float, callback: Callable[[str], Awaitable[None]]) -> None:
        self.delay_s = delay_s
        self._callback = callback
        self._task: Optional[asyncio.Task] = None

    def submit(self, value: str) -> None:
        self.cancel()
        if not value:
            return
        self._task = asyncio.create_task(self._run(value))

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def wait(self) -> None:
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def _run(self, value: str) -> None:
        await asyncio.sleep(self.delay_s)
        await self._callback(value)


class ChatEngine:
    """One signed-in session: a transport connection plus the synchronized views.

    Listeners registered through ``on_event`` receive ``(kind, data)`` pairs where
    kind is one of ``contacts``, ``conversation``, ``status``, ``notice``,
    ``search`` or ``banner``.
    """

    def __init__(
        self,
        config: ClientConfig,
        session: SessionRecord,
        http: aiohttp.ClientSession,
        on_event: Optional[EventListener] = None,
    ) -> None:
        self.config = config
        self.session = session
        self.api = ApiClient(config, http, token=session.token)
        self.transport = TransportChannel(config, http, on_closed=self._on_connection_lost)
        self.tracker = MessageStatusTracker(session.username)
        self.contacts = ContactSynchronizer(self.api, session.username, on_change=self._contacts_changed)
        self.view = ConversationView(
            self.tracker,
            self.api,
            self.transport,
            on_render=self._conversation_rendered,
            on_update=self._statuses_changed,
        )
        self.banner: Optional[str] = None
        self.search_results: List[Dict[str, Any]] = []
        self._listeners: List[EventListener] = [on_event] if on_event else []
        self._search = Debouncer(config.search_debounce_s, self._run_search)
        self._timers: Set[asyncio.Task] = set()

    @property
    def self_id(self) -> str:
        return self.session.username

    @property
    def active_peer(self) -> Optional[str]:
        return self.view.active_peer

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    async def start(self) -> ConnectionHandle:
        handlers = {
            inbox_destination(self.self_id): self._on_private_message,
            status_destination(self.self_id): self._on_status,
            PUBLIC_TOPIC: self._on_presence,
        }
        try:
            handle = await self.transport.connect(self.session, handlers)
        except ChatConnectionError as exc:
            logger.error("transport connection failed: %s", exc)
            self._show_banner()
            raise
        await self.contacts.refresh()
        await self._load_backlog()
        return handle

    async def close(self) -> None:
        """Cancel timers and disconnect, announcing OFFLINE on the way out."""

        self._search.cancel()
        for task in list(self._timers):
            task.cancel()
        await asyncio.gather(*self._timers, return_exceptions=True)
        await self.transport.disconnect(self.session)

    async def logout(self) -> None:
        await self.close()
        clear_session(self.config.session_path)
        self.view.close()
        self.contacts.set_active(None)
        self.search_results = []

    async def settle(self) -> None:
        """Wait for pending timers and in-flight event handlers to complete."""

        while self._timers:
            await asyncio.gather(*list(self._timers), return_exceptions=True)
        await self.transport.drain()

    # -- user actions -------------------------------------------------------

    async def select_peer(self, peer_id: str, display_name: Optional[str] = None) -> bool:
        contact = self.contacts.get(peer_id)
        if display_name is None and contact is not None:
            display_name = contact.display_name
        self.contacts.set_active(peer_id)
        return await self.view.open(peer_id, display_name)

    async def select_search_result(self, user: Dict[str, Any]) -> bool:
        self._search.cancel()
        self.search_results = []
        return await self.select_peer(str(user["username"]), user.get("fullName"))

    async def send_message(self, content: str) -> Optional[Message]:
        message = await self.view.send(content)
        if message is not None:
            self._later(self.config.contact_refresh_delay_s, self.contacts.refresh)
        return message

    def search(self, query: str) -> None:
        query = query.strip()
        if not query:
            self._search.cancel()
            self.search_results = []
            self._emit("search", [])
            return
        self._search.submit(query)

    async def _run_search(self, query: str) -> None:
        try:
            users = await self.api.search_users(query)
        except FetchError as exc:
            logger.warning("user search failed: %s", exc)
            return
        self.search_results = [user for user in users if user.get("username") != self.self_id]
        self._emit("search", list(self.search_results))

    # -- transport events ---------------------------------------------------

    async def _on_private_message(self, payload: Dict[str, Any]) -> None:
        await self.view.on_incoming(payload)
        await self.contacts.refresh()

    def _on_status(self, payload: Dict[str, Any]) -> None:
        self.view.apply_status(payload)

    async def _on_presence(self, payload: Dict[str, Any]) -> None:
        username = payload.get("username")
        if username and username != self.self_id:
            name = payload.get("fullName") or username
            verb = "is now online" if payload.get("status") == PRESENCE_ONLINE else "went offline"
            self._emit("notice", f"{name} {verb}")
        await self.contacts.refresh()

    def _on_connection_lost(self) -> None:
        # No reconnect: realtime stays down until restart.
        self._show_banner()

    async def _load_backlog(self) -> None:
        try:
            entries = await self.api.fetch_undelivered(self.self_id)
        except FetchError as exc:
            logger.warning("backlog fetch failed: %s", exc)
            return
        counts = aggregate_backlog(entries)
        if not counts:
            return

        async def apply_seed() -> None:
            self.contacts.seed_backlog(counts)

        self._later(self.config.badge_seed_delay_s, apply_seed)

    # -- plumbing -----------------------------------------------------------

    def _later(self, delay_s: float, action: Callable[[], Awaitable[Any]]) -> None:
        async def run() -> None:
            await asyncio.sleep(delay_s)
            await action()

        task = asyncio.create_task(run())
        self._timers.add(task)
        task.add_done_callback(self._timers.discard)

    def _show_banner(self) -> None:
        self.banner = CONNECTION_BANNER
        self._emit("banner", self.banner)

    def _emit(self, kind: str, data: Any) -> None:
        for listener in list(self._listeners):
            listener(kind, data)

    def _contacts_changed(self, contacts: List[Contact]) -> None:
        self._emit("contacts", contacts)

    def _conversation_rendered(self, rendered: List[RenderedMessage]) -> None:
        self._emit("conversation", rendered)

    def _statuses_changed(self, rendered: List[RenderedMessage]) -> None:
        self._emit("status", rendered)
