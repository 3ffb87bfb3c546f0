import asyncio
import unittest

from aiohttp import WSCloseCode, WSMsgType
from aiohttp.test_utils import TestClient, TestServer

from gateway.ws_transport import PUBLIC_TOPIC, create_app

from .ws_receive_util import assert_no_push, recv_json_until, recv_push


class WsTransportTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.app = create_app(ping_interval_s=3600)
        self.server = TestServer(self.app)
        await self.server.start_server()
        self.client = TestClient(self.server)
        await self.client.start_server()
        self.tokens = {
            "alice": await self._register("alice", "Alice Liddell"),
            "bob": await self._register("bob", "Bob Builder"),
        }

    async def asyncTearDown(self):
        await self.client.close()
        await self.server.close()

    async def _register(self, username: str, full_name: str) -> str:
        resp = await self.client.post(
            "/api/auth/register",
            json={"username": username, "fullName": full_name, "password": f"pw-{username}"},
        )
        self.assertEqual(resp.status, 200)
        body = await resp.json()
        return body["token"]

    def _auth(self, username: str) -> dict:
        return {"Authorization": f"Bearer {self.tokens[username]}"}

    async def _connect(self, username: str, *, online: bool = True):
        ws = await self.client.ws_connect("/ws")
        await ws.send_json({"v": 1, "t": "connect", "id": "c1", "body": {"token": self.tokens[username]}})
        connected = await ws.receive_json()
        self.assertEqual(connected["t"], "connected")
        self.assertEqual(connected["body"]["username"], username)
        for queue in ("messages", "status"):
            await ws.send_json({"v": 1, "t": "subscribe", "body": {"destination": f"/user/{username}/queue/{queue}"}})
        await ws.send_json({"v": 1, "t": "subscribe", "body": {"destination": PUBLIC_TOPIC}})
        if online:
            await self._send(ws, "/app/user.addUser", {"username": username, "status": "ONLINE"})
            await recv_push(ws, PUBLIC_TOPIC)
        return ws

    async def _send(self, ws, destination: str, payload: dict) -> None:
        await ws.send_json({"v": 1, "t": "send", "body": {"destination": destination, "payload": payload}})

    async def _wait_for_messages(self, recipient: str, count: int) -> None:
        store = self.app["runtime"].store
        deadline = asyncio.get_running_loop().time() + 2
        while len(store.undelivered(recipient)) < count:
            if asyncio.get_running_loop().time() > deadline:
                self.fail(f"{recipient} never received {count} messages")
            await asyncio.sleep(0.01)

    async def test_login_and_register_errors(self):
        resp = await self.client.post("/api/auth/login", json={"username": "alice", "password": "nope"})
        self.assertEqual(resp.status, 401)
        self.assertEqual((await resp.json())["error"], "Invalid username or password")

        resp = await self.client.post(
            "/api/auth/register", json={"username": "alice", "fullName": "A", "password": "x"}
        )
        self.assertEqual(resp.status, 400)
        self.assertIn("error", await resp.json())

        resp = await self.client.post("/api/auth/login", json={"username": "alice", "password": "pw-alice"})
        body = await resp.json()
        self.assertEqual(body["username"], "alice")
        self.assertEqual(body["fullName"], "Alice Liddell")

    async def test_rest_requires_bearer_token_for_own_resources(self):
        resp = await self.client.get("/contacts/alice")
        self.assertEqual(resp.status, 401)
        resp = await self.client.get("/contacts/bob", headers=self._auth("alice"))
        self.assertEqual(resp.status, 403)
        resp = await self.client.get("/contacts/alice", headers=self._auth("alice"))
        self.assertEqual(await resp.json(), [])

    async def test_handshake_rejects_unknown_token(self):
        ws = await self.client.ws_connect("/ws")
        await ws.send_json({"v": 1, "t": "connect", "body": {"token": "bogus"}})
        reply = await ws.receive_json()
        self.assertEqual(reply["t"], "error")
        self.assertEqual(reply["body"]["code"], "unauthorized")
        await ws.close()

    async def test_cannot_subscribe_to_another_users_queue(self):
        ws = await self._connect("alice", online=False)
        await ws.send_json({"v": 1, "t": "subscribe", "id": "s1", "body": {"destination": "/user/bob/queue/messages"}})
        reply = await recv_json_until(ws, predicate=lambda f: f.get("t") == "error")
        self.assertEqual(reply["body"]["code"], "forbidden")
        await ws.close()

    async def test_message_to_offline_user_stays_sent_without_status_push(self):
        alice = await self._connect("alice")
        await self._send(alice, "/app/chat", {"senderId": "alice", "recipientId": "bob", "content": "hi", "clientId": "local-1"})
        await assert_no_push(alice, "/user/alice/queue/status", timeout=0.2)

        resp = await self.client.get("/messages/alice/bob", headers=self._auth("alice"))
        history = await resp.json()
        self.assertEqual([(m["content"], m["status"]) for m in history], [("hi", "SENT")])
        await alice.close()

    async def test_online_delivery_pushes_inbox_and_echoes_client_id(self):
        alice = await self._connect("alice")
        bob = await self._connect("bob")
        await recv_push(alice, PUBLIC_TOPIC)

        await self._send(alice, "/app/chat", {"senderId": "alice", "recipientId": "bob", "content": "hey", "clientId": "local-9"})

        inbound = await recv_push(bob, "/user/bob/queue/messages")
        status = await recv_push(alice, "/user/alice/queue/status")
        self.assertEqual(inbound["senderId"], "alice")
        self.assertEqual(inbound["content"], "hey")
        self.assertEqual(status["status"], "DELIVERED")
        self.assertEqual(status["clientId"], "local-9")
        self.assertEqual(status["id"], inbound["id"])
        await alice.close()
        await bob.close()

    async def test_undelivered_fetch_confirms_delivery_to_sender(self):
        alice = await self._connect("alice")
        for text in ("one", "two", "three"):
            await self._send(alice, "/app/chat", {"recipientId": "bob", "content": text})
        await self._wait_for_messages("bob", 3)

        resp = await self.client.get("/messages/undelivered/bob", headers=self._auth("bob"))
        backlog = await resp.json()
        self.assertEqual([m["content"] for m in backlog], ["one", "two", "three"])

        pushes = [await recv_push(alice, "/user/alice/queue/status") for _ in range(3)]
        self.assertEqual([p["id"] for p in pushes], [m["id"] for m in backlog])
        self.assertTrue(all(p["status"] == "DELIVERED" and "clientId" not in p for p in pushes))

        resp = await self.client.get("/messages/undelivered/bob", headers=self._auth("bob"))
        self.assertEqual(await resp.json(), [])
        await alice.close()

    async def test_bulk_read_receipt_pushes_read_per_message(self):
        alice = await self._connect("alice")
        for text in ("one", "two"):
            await self._send(alice, "/app/chat", {"recipientId": "bob", "content": text})
        await self._wait_for_messages("bob", 2)
        bob = await self._connect("bob")
        await recv_push(alice, PUBLIC_TOPIC)

        await self._send(bob, "/app/chat.read", {"senderId": "alice", "recipientId": "bob"})

        pushes = [await recv_push(alice, "/user/alice/queue/status") for _ in range(2)]
        self.assertTrue(all(p["status"] == "READ" and p["readTimestamp"] for p in pushes))
        self.assertTrue(all(p["recipientId"] == "bob" for p in pushes))

        resp = await self.client.get("/contacts/bob", headers=self._auth("bob"))
        contacts = await resp.json()
        self.assertEqual(contacts[0]["username"], "alice")
        self.assertEqual(contacts[0]["unreadCount"], 0)
        await alice.close()
        await bob.close()

    async def test_socket_close_without_disconnect_announces_offline(self):
        alice = await self._connect("alice")
        bob = await self._connect("bob")
        await recv_push(alice, PUBLIC_TOPIC)

        await bob.close()
        notice = await recv_push(alice, PUBLIC_TOPIC)

        self.assertEqual(notice, {"username": "bob", "fullName": "Bob Builder", "status": "OFFLINE"})
        await alice.close()

    async def test_history_echoes_client_id_of_stored_sends(self):
        alice = await self._connect("alice")
        await self._send(alice, "/app/chat", {"recipientId": "bob", "content": "hi", "clientId": "local-7"})
        await self._send(alice, "/app/chat", {"recipientId": "bob", "content": "plain"})
        await self._wait_for_messages("bob", 2)

        resp = await self.client.get("/messages/bob/alice", headers=self._auth("bob"))
        history = await resp.json()

        self.assertEqual(history[0]["clientId"], "local-7")
        self.assertNotIn("clientId", history[1])
        await alice.close()

    async def test_server_shutdown_closes_open_sockets(self):
        alice = await self._connect("alice")

        closing = asyncio.create_task(self.server.close())
        msg = await alice.receive(timeout=2)
        await closing

        self.assertIn(msg.type, {WSMsgType.CLOSE, WSMsgType.CLOSED})
        self.assertEqual(alice.close_code, WSCloseCode.GOING_AWAY)


if __name__ == "__main__":
    unittest.main()
