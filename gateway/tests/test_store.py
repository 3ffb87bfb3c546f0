import unittest

from gateway.store import (
    MESSAGE_DELIVERED,
    MESSAGE_READ,
    MESSAGE_SENT,
    STATUS_ONLINE,
    AuthFailed,
    ChatStore,
    chat_id_for,
)


class ChatStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = ChatStore()
        self.alice_token = self.store.register("alice", "Alice Liddell", "pw-a")
        self.store.register("bob", "Bob Builder", "pw-b")

    def test_register_rejects_duplicate_username(self):
        with self.assertRaises(AuthFailed):
            self.store.register("alice", "Other", "pw")

    def test_login_checks_password(self):
        token = self.store.login("alice", "pw-a")
        self.assertEqual(self.store.user_for_token(token).username, "alice")
        with self.assertRaises(AuthFailed):
            self.store.login("alice", "wrong")
        with self.assertRaises(AuthFailed):
            self.store.login("nobody", "pw-a")

    def test_chat_id_is_order_independent(self):
        self.assertEqual(chat_id_for("bob", "alice"), chat_id_for("alice", "bob"))

    def test_message_status_depends_on_recipient_presence(self):
        offline = self.store.save_message("alice", "bob", "hi")
        self.store.set_status("bob", STATUS_ONLINE)
        online = self.store.save_message("alice", "bob", "again")

        self.assertEqual(offline.status, MESSAGE_SENT)
        self.assertEqual(online.status, MESSAGE_DELIVERED)
        self.assertEqual([m.id for m in self.store.undelivered("bob")], [offline.id])

    def test_mark_delivered_then_read(self):
        first = self.store.save_message("alice", "bob", "one")
        second = self.store.save_message("alice", "bob", "two")
        reply = self.store.save_message("bob", "alice", "reply")
        self.store.mark_delivered(self.store.undelivered("bob"))
        self.assertEqual(first.status, MESSAGE_DELIVERED)

        updated = self.store.mark_read("alice", "bob")

        self.assertEqual([m.id for m in updated], [first.id, second.id])
        self.assertTrue(all(m.status == MESSAGE_READ and m.read_timestamp for m in updated))
        self.assertEqual(reply.status, MESSAGE_SENT)
        self.assertEqual(self.store.mark_read("alice", "bob"), [])

    def test_contacts_ordered_by_latest_message_with_unread_counts(self):
        self.store.register("carol", "Carol", "pw-c")
        self.store.save_message("alice", "bob", "older")
        self.store.save_message("carol", "alice", "c1")
        self.store.save_message("carol", "alice", "c2")

        contacts = self.store.contacts("alice")

        self.assertEqual([c["username"] for c in contacts], ["carol", "bob"])
        self.assertEqual(contacts[0]["unreadCount"], 2)
        self.assertEqual(contacts[0]["lastMessage"], "c2")
        self.assertEqual(contacts[0]["lastMessageSenderId"], "carol")
        self.assertEqual(contacts[1]["unreadCount"], 0)
        self.assertEqual(contacts[1]["lastMessageSenderId"], "alice")

    def test_no_contacts_for_new_user(self):
        self.assertEqual(self.store.contacts("alice"), [])

    def test_search_matches_username_or_full_name(self):
        self.assertEqual([u.username for u in self.store.search("build")], ["bob"])
        self.assertEqual([u.username for u in self.store.search("AL")], ["alice"])
        self.assertEqual(self.store.search("  "), [])


if __name__ == "__main__":
    unittest.main()
