"""Persistent publish/subscribe channel over a single websocket."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import secrets
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import aiohttp

from chat_client.config import ClientConfig
from chat_client.errors import ChatConnectionError
from chat_client.session_store import SessionRecord

logger = logging.getLogger(__name__)

PUBLIC_TOPIC = "/topic/public"
ADD_USER = "/app/user.addUser"
DISCONNECT_USER = "/app/user.disconnectUser"
CHAT = "/app/chat"
CHAT_READ = "/app/chat.read"

PRESENCE_ONLINE = "ONLINE"
PRESENCE_OFFLINE = "OFFLINE"

Handler = Callable[[Dict[str, Any]], Optional[Awaitable[None]]]


def inbox_destination(username: str) -> str:
    return f"/user/{username}/queue/messages"


def status_destination(username: str) -> str:
    return f"/user/{username}/queue/status"


def presence_payload(session: SessionRecord, status: str) -> Dict[str, str]:
    return {"username": session.username, "fullName": session.full_name, "status": status}


@dataclass
class ConnectionHandle:
    username: str
    ws: aiohttp.ClientWebSocketResponse
    subscriptions: List[str] = field(default_factory=list)

    @property
    def connected(self) -> bool:
        return not self.ws.closed


class TransportChannel:
    """Owns the websocket, its three subscriptions and the outbound publish path.

    Inbound ``message`` frames are dispatched to the handler registered for their
    destination. Coroutine handlers run as background tasks so a slow handler
    (for example one awaiting an HTTP fetch) never stalls the reader.
    ``on_closed`` fires when the socket drops without :meth:`disconnect`.
    """

    def __init__(
        self,
        config: ClientConfig,
        http: aiohttp.ClientSession,
        on_closed: Optional[Callable[[], None]] = None,
    ) -> None:
        self.config = config
        self._http = http
        self._on_closed = on_closed
        self._handle: Optional[ConnectionHandle] = None
        self._handlers: Dict[str, Handler] = {}
        self._reader_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def connected(self) -> bool:
        return self._handle is not None and self._handle.connected

    async def connect(self, session: SessionRecord, handlers: Dict[str, Handler]) -> ConnectionHandle:
        try:
            ws = await asyncio.wait_for(self._http.ws_connect(self.config.ws_url), self.config.connect_timeout_s)
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as exc:
            raise ChatConnectionError(f"could not open {self.config.ws_url}: {exc or exc.__class__.__name__}") from exc

        request_id = f"connect_{secrets.token_hex(4)}"
        try:
            await ws.send_json({"v": 1, "t": "connect", "id": request_id, "body": {"token": session.token}})
            reply = await asyncio.wait_for(ws.receive(), self.config.connect_timeout_s)
        except (aiohttp.ClientError, ConnectionResetError, asyncio.TimeoutError) as exc:
            await ws.close()
            raise ChatConnectionError(f"handshake failed: {exc or exc.__class__.__name__}") from exc

        frame = _decode(reply)
        if frame is None or frame.get("t") != "connected":
            await ws.close()
            body = (frame or {}).get("body") or {}
            raise ChatConnectionError(f"handshake rejected: {body.get('message') or 'unexpected reply'}")

        handle = ConnectionHandle(username=session.username, ws=ws)
        self._handle = handle
        self._handlers = dict(handlers)
        for destination in self._handlers:
            await ws.send_json({"v": 1, "t": "subscribe", "body": {"destination": destination}})
            handle.subscriptions.append(destination)
        self._reader_task = asyncio.create_task(self._read_loop(ws))
        logger.info("connected as %s with %d subscriptions", session.username, len(handle.subscriptions))

        await self.publish(ADD_USER, presence_payload(session, PRESENCE_ONLINE))
        return handle

    async def publish(self, destination: str, payload: Dict[str, Any]) -> None:
        """Fire-and-forget send; failures are logged, never raised."""

        if not self.connected:
            logger.warning("dropping publish to %s: not connected", destination)
            return
        frame = {"v": 1, "t": "send", "body": {"destination": destination, "payload": payload}}
        try:
            await self._handle.ws.send_json(frame)
        except (aiohttp.ClientError, ConnectionResetError, RuntimeError) as exc:
            logger.warning("publish to %s failed: %s", destination, exc)

    async def disconnect(self, session: SessionRecord) -> None:
        if self._handle is None:
            return
        await self.publish(DISCONNECT_USER, presence_payload(session, PRESENCE_OFFLINE))
        handle, self._handle = self._handle, None
        await handle.ws.close()
        if self._reader_task is not None:
            self._reader_task.cancel()
            await asyncio.gather(self._reader_task, return_exceptions=True)
            self._reader_task = None
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info("disconnected %s", session.username)

    async def drain(self) -> None:
        """Wait until every in-flight handler task has finished."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type != aiohttp.WSMsgType.TEXT:
                    if msg.type in {aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR}:
                        break
                    continue
                frame = _decode(msg)
                if frame is None:
                    logger.warning("ignoring malformed frame")
                    continue
                frame_type = frame.get("t")
                body = frame.get("body") or {}
                if frame_type == "message":
                    self._dispatch(body.get("destination"), body.get("payload"))
                elif frame_type == "ping":
                    await ws.send_json({"v": 1, "t": "pong", "id": frame.get("id")})
                elif frame_type == "error":
                    logger.warning("server error %s: %s", body.get("code"), body.get("message"))
        except asyncio.CancelledError:
            return
        if self._handle is None or self._handle.ws is not ws:
            logger.info("transport connection closed")
            return
        logger.error("transport connection lost (close code %s)", ws.close_code)
        if self._on_closed is not None:
            self._on_closed()

    def _dispatch(self, destination: object, payload: object) -> None:
        handler = self._handlers.get(destination) if isinstance(destination, str) else None
        if handler is None or not isinstance(payload, dict):
            logger.debug("no handler for %r", destination)
            return
        result = handler(payload)
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("event handler failed", exc_info=exc)


def _decode(msg: aiohttp.WSMessage) -> Optional[Dict[str, Any]]:
    if msg.type != aiohttp.WSMsgType.TEXT:
        return None
    try:
        frame = json.loads(msg.data)
    except ValueError:
        return None
    if not isinstance(frame, dict) or frame.get("v") != 1:
        return None
    return frame
