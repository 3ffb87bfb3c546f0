from __future__ import annotations

import asyncio
import logging
import secrets
import weakref
from typing import Any, Dict, List

from aiohttp import WSCloseCode, WSMsgType, web

from .hub import Subscription, SubscriptionHub, user_destination
from .store import (
    MESSAGE_DELIVERED,
    MESSAGE_READ,
    STATUS_OFFLINE,
    STATUS_ONLINE,
    AuthFailed,
    ChatMessage,
    ChatStore,
    User,
)

logger = logging.getLogger(__name__)

PUBLIC_TOPIC = "/topic/public"


class Runtime:
    def __init__(self, *, store: ChatStore, hub: SubscriptionHub) -> None:
        self.store = store
        self.hub = hub
        self.connections: Dict[str, int] = {}
        self.sockets: weakref.WeakSet[web.WebSocketResponse] = weakref.WeakSet()

    def attach(self, username: str) -> None:
        self.connections[username] = self.connections.get(username, 0) + 1

    def detach(self, username: str) -> int:
        remaining = max(self.connections.get(username, 0) - 1, 0)
        if remaining:
            self.connections[username] = remaining
        else:
            self.connections.pop(username, None)
        return remaining

    def announce(self, user: User) -> None:
        self.hub.broadcast(PUBLIC_TOPIC, user.to_json())


def _status_push(message: ChatMessage, status: str, *, include_client_id: bool = False) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "id": message.id,
        "senderId": message.sender_id,
        "recipientId": message.recipient_id,
        "status": status,
        "timestamp": message.time_stamp,
    }
    if status == MESSAGE_READ and message.read_timestamp:
        payload["readTimestamp"] = message.read_timestamp
    if include_client_id and message.client_id:
        payload["clientId"] = message.client_id
    return payload


async def close_sockets(app: web.Application) -> None:
    runtime: Runtime = app["runtime"]
    for ws in list(runtime.sockets):
        await ws.close(code=WSCloseCode.GOING_AWAY, message=b"server shutdown")


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


def _unauthorized() -> web.Response:
    return web.json_response({"error": "unauthorized"}, status=401)


def _forbidden() -> web.Response:
    return web.json_response({"error": "forbidden"}, status=403)


def _authenticate_request(request: web.Request) -> User | None:
    runtime: Runtime = request.app["runtime"]
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return runtime.store.user_for_token(auth_header[len("Bearer ") :].strip())


async def _read_json(request: web.Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except Exception:
        return {}
    return body if isinstance(body, dict) else {}


def _auth_response(token: str, user: User) -> web.Response:
    return web.json_response({"token": token, "username": user.username, "fullName": user.full_name})


async def handle_register(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    body = await _read_json(request)
    try:
        token = runtime.store.register(
            str(body.get("username") or ""),
            str(body.get("fullName") or ""),
            str(body.get("password") or ""),
        )
    except AuthFailed as exc:
        return web.json_response({"error": str(exc)}, status=400)
    return _auth_response(token, runtime.store.user_for_token(token))


async def handle_login(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    body = await _read_json(request)
    try:
        token = runtime.store.login(str(body.get("username") or ""), str(body.get("password") or ""))
    except AuthFailed as exc:
        return web.json_response({"error": str(exc)}, status=401)
    return _auth_response(token, runtime.store.user_for_token(token))


async def handle_search(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    if _authenticate_request(request) is None:
        return _unauthorized()
    users = runtime.store.search(request.query.get("query", ""))
    return web.json_response([user.to_json() for user in users])


async def handle_contacts(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    user = _authenticate_request(request)
    if user is None:
        return _unauthorized()
    if user.username != request.match_info["user_id"]:
        return _forbidden()
    return web.json_response(runtime.store.contacts(user.username))


async def handle_messages(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    user = _authenticate_request(request)
    if user is None:
        return _unauthorized()
    sender_id = request.match_info["sender_id"]
    recipient_id = request.match_info["recipient_id"]
    if user.username not in {sender_id, recipient_id}:
        return _forbidden()
    messages = runtime.store.chat_messages(sender_id, recipient_id)
    return web.json_response([message.to_json() for message in messages])


async def handle_undelivered(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    user = _authenticate_request(request)
    if user is None:
        return _unauthorized()
    if user.username != request.match_info["user_id"]:
        return _forbidden()
    undelivered = runtime.store.undelivered(user.username)
    for message in undelivered:
        if runtime.store.is_online(message.sender_id):
            runtime.hub.send_to_user(message.sender_id, "status", _status_push(message, MESSAGE_DELIVERED))
    payload = [message.to_json() for message in undelivered]
    runtime.store.mark_delivered(undelivered)
    return web.json_response(payload)


async def handle_mark_read(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    user = _authenticate_request(request)
    if user is None:
        return _unauthorized()
    if user.username != request.match_info["recipient_id"]:
        return _forbidden()
    _mark_read(runtime, request.match_info["sender_id"], user.username)
    return web.json_response({"status": "ok"})


def _mark_read(runtime: Runtime, sender_id: str, recipient_id: str) -> List[ChatMessage]:
    updated = runtime.store.mark_read(sender_id, recipient_id)
    if updated and runtime.store.is_online(sender_id):
        for message in updated:
            runtime.hub.send_to_user(sender_id, "status", _status_push(message, MESSAGE_READ))
    return updated


def create_app(*, ping_interval_s: int = 30, ping_miss_limit: int = 2, store: ChatStore | None = None) -> web.Application:
    runtime = Runtime(store=store or ChatStore(), hub=SubscriptionHub())
    app = web.Application()
    app["runtime"] = runtime
    app["ws_config"] = {"ping_interval_s": ping_interval_s, "ping_miss_limit": ping_miss_limit}
    app.router.add_get("/healthz", handle_health)
    app.router.add_post("/api/auth/register", handle_register)
    app.router.add_post("/api/auth/login", handle_login)
    app.router.add_get("/users/search", handle_search)
    app.router.add_get("/contacts/{user_id}", handle_contacts)
    app.router.add_get("/messages/undelivered/{user_id}", handle_undelivered)
    app.router.add_get("/messages/{sender_id}/{recipient_id}", handle_messages)
    app.router.add_post("/messages/read/{sender_id}/{recipient_id}", handle_mark_read)
    app.router.add_get("/ws", websocket_handler)
    app.on_shutdown.append(close_sockets)
    return app


def _error_frame(code: str, message: str, *, request_id: str | None = None) -> dict[str, Any]:
    return {"v": 1, "t": "error", "id": request_id, "body": {"code": code, "message": message}}


def _handle_app_send(runtime: Runtime, user: User, destination: str, payload: Dict[str, Any]) -> str | None:
    """Apply one client publish. Returns an error message when the publish is rejected."""

    if destination == "/app/user.addUser":
        runtime.store.set_status(user.username, STATUS_ONLINE)
        runtime.announce(user)
    elif destination == "/app/user.disconnectUser":
        runtime.store.set_status(user.username, STATUS_OFFLINE)
        runtime.announce(user)
    elif destination == "/app/chat":
        recipient_id = payload.get("recipientId")
        content = payload.get("content")
        if not isinstance(recipient_id, str) or runtime.store.get_user(recipient_id) is None:
            return "unknown recipientId"
        if not isinstance(content, str) or not content:
            return "content required"
        client_id = payload.get("clientId")
        saved = runtime.store.save_message(
            user.username, recipient_id, content, client_id if isinstance(client_id, str) else None
        )
        logger.info("message %s from %s to %s stored as %s", saved.id, saved.sender_id, recipient_id, saved.status)
        if saved.status == MESSAGE_DELIVERED:
            inbound = {
                "id": saved.id,
                "senderId": saved.sender_id,
                "recipientId": saved.recipient_id,
                "content": saved.content,
                "status": MESSAGE_DELIVERED,
                "timestamp": saved.time_stamp,
            }
            if saved.client_id:
                inbound["clientId"] = saved.client_id
            runtime.hub.send_to_user(recipient_id, "messages", inbound)
            runtime.hub.send_to_user(
                user.username, "status", _status_push(saved, MESSAGE_DELIVERED, include_client_id=True)
            )
    elif destination == "/app/chat.read":
        sender_id = payload.get("senderId")
        if not isinstance(sender_id, str):
            return "senderId required"
        _mark_read(runtime, sender_id, user.username)
    else:
        return "unknown destination"
    return None


def _may_subscribe(user: User, destination: str) -> bool:
    if destination == PUBLIC_TOPIC:
        return True
    return destination in {user_destination(user.username, "messages"), user_destination(user.username, "status")}


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    runtime: Runtime = request.app["runtime"]
    ws_config: dict[str, Any] = request.app["ws_config"]

    ws = web.WebSocketResponse()
    await ws.prepare(request)
    runtime.sockets.add(ws)

    connection_id = f"c_{secrets.token_urlsafe(8)}"
    last_activity = asyncio.get_event_loop().time()
    missed_heartbeats = 0
    outbound: asyncio.Queue[dict | None] = asyncio.Queue(maxsize=1000)
    subscriptions: List[Subscription] = []
    user: User | None = None
    explicit_disconnect = False

    def mark_activity() -> None:
        nonlocal last_activity, missed_heartbeats
        last_activity = asyncio.get_event_loop().time()
        missed_heartbeats = 0

    def enqueue_push(destination: str, payload: dict) -> None:
        try:
            outbound.put_nowait({"v": 1, "t": "message", "body": {"destination": destination, "payload": payload}})
        except asyncio.QueueFull:
            asyncio.create_task(ws.close(code=1011, message=b"backpressure"))

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                await ws.send_json(frame)
        except (asyncio.CancelledError, ConnectionResetError):
            return

    async def heartbeat() -> None:
        nonlocal missed_heartbeats
        try:
            while True:
                await asyncio.sleep(ws_config["ping_interval_s"])
                if ws.closed:
                    return
                now = asyncio.get_event_loop().time()
                if now - last_activity >= ws_config["ping_interval_s"]:
                    await ws.send_json({"v": 1, "t": "ping"})
                    missed_heartbeats += 1
                    if missed_heartbeats > ws_config["ping_miss_limit"]:
                        await ws.close(code=1001, message=b"heartbeat timeout")
                        return
        except (asyncio.CancelledError, ConnectionResetError):
            return

    writer_task = asyncio.create_task(writer())
    heartbeat_task = asyncio.create_task(heartbeat())

    try:
        first_msg = await ws.receive()
        if first_msg.type != WSMsgType.TEXT:
            await ws.close(code=1002, message=b"invalid handshake")
            return ws
        try:
            payload = first_msg.json()
        except Exception:
            await ws.close(code=1002, message=b"invalid json")
            return ws

        body = payload.get("body") or {}
        if payload.get("v") != 1 or payload.get("t") != "connect":
            await ws.send_json(_error_frame("invalid_request", "first frame must be connect", request_id=payload.get("id")))
            await ws.close()
            return ws
        user = runtime.store.user_for_token(str(body.get("token") or ""))
        if user is None:
            await ws.send_json(_error_frame("unauthorized", "invalid token", request_id=payload.get("id")))
            await ws.close()
            return ws

        runtime.attach(user.username)
        mark_activity()
        await ws.send_json(
            {
                "v": 1,
                "t": "connected",
                "id": payload.get("id"),
                "body": {"username": user.username, "fullName": user.full_name},
            }
        )

        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except Exception:
                    await ws.send_json(_error_frame("invalid_request", "malformed json"))
                    continue

                mark_activity()
                if frame.get("v") != 1:
                    await ws.send_json(_error_frame("invalid_request", "unsupported version", request_id=frame.get("id")))
                    continue

                frame_type = frame.get("t")
                body = frame.get("body") or {}
                destination = body.get("destination")

                if frame_type == "ping":
                    await ws.send_json({"v": 1, "t": "pong", "id": frame.get("id")})
                elif frame_type == "pong":
                    continue
                elif frame_type == "subscribe":
                    if not isinstance(destination, str) or not _may_subscribe(user, destination):
                        await ws.send_json(
                            _error_frame("forbidden", "destination not allowed", request_id=frame.get("id"))
                        )
                        continue
                    subscriptions.append(runtime.hub.subscribe(connection_id, destination, enqueue_push))
                elif frame_type == "send":
                    send_payload = body.get("payload")
                    if not isinstance(destination, str) or not isinstance(send_payload, dict):
                        await ws.send_json(
                            _error_frame("invalid_request", "destination and payload required", request_id=frame.get("id"))
                        )
                        continue
                    if destination == "/app/user.disconnectUser":
                        explicit_disconnect = True
                    error = _handle_app_send(runtime, user, destination, send_payload)
                    if error is not None:
                        await ws.send_json(_error_frame("invalid_request", error, request_id=frame.get("id")))
                else:
                    await ws.send_json(_error_frame("invalid_request", "unknown frame type", request_id=frame.get("id")))
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        heartbeat_task.cancel()
        runtime.sockets.discard(ws)
        writer_task.cancel()
        for subscription in subscriptions:
            runtime.hub.unsubscribe(subscription)
        if user is not None and runtime.detach(user.username) == 0 and not explicit_disconnect:
            if runtime.store.is_online(user.username):
                runtime.store.set_status(user.username, STATUS_OFFLINE)
                runtime.announce(user)
        await asyncio.gather(heartbeat_task, writer_task, return_exceptions=True)

    return ws
