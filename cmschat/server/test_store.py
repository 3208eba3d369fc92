import unittest
import tempfile
import shutil
import os
from cmschat.server.repo import ConversationsRepo, MessagesRepo
from cmschat.server.store import MessageStore
from cmschat.server.models import Message
from cmschat.server.errors import ForbiddenError, NotFoundError, TransientStoreError, ValidationError


class RecordingFanout:
    """Collects published events instead of delivering them."""

    def __init__(self):
        self.events = []

    def publish(self, participants, event):
        self.events.append((list(participants), event))
        return 0

    def types(self):
        return [e["type"] for _, e in self.events]


class StoreTestCase(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.conversations = ConversationsRepo(os.path.join(self.temp_dir, "conversations.jsonl"))
        self.messages = MessagesRepo(os.path.join(self.temp_dir, "messages.jsonl"))
        self.fanout = RecordingFanout()
        self.store = MessageStore(self.conversations, self.messages, self.fanout)
        self.conv = self.conversations.create(["A", "B"], created_ts=1000)

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)


class TestSendMessage(StoreTestCase):
    def test_send_creates_message_and_publishes_new_then_delivered(self):
        msg = self.store.send_message(self.conv.id, "A", "  hello  ")

        self.assertEqual(msg.text, "hello")
        self.assertEqual(msg.delivered_to, set())
        self.assertEqual(msg.read_by, set())
        self.assertEqual(self.fanout.types(), ["message:new", "message:delivered"])
        participants, delivered = self.fanout.events[1]
        self.assertEqual(participants, ["A", "B"])
        self.assertEqual(delivered["payload"], {"conversationId": self.conv.id, "by": "A", "messageIds": [msg.id]})
        new_payload = self.fanout.events[0][1]["payload"]
        self.assertEqual(new_payload["from"], "A")
        self.assertEqual(new_payload["text"], "hello")
        self.assertEqual(new_payload["conversationId"], self.conv.id)
        self.assertNotIn("conversation", new_payload)

    def test_send_bumps_last_activity(self):
        msg = self.store.send_message(self.conv.id, "A", "hello")
        self.assertEqual(self.conversations.get(self.conv.id).updated_ts, msg.created_ts)

    def test_blank_text_is_rejected(self):
        for text in ["", "   ", None]:
            with self.assertRaises(ValidationError):
                self.store.send_message(self.conv.id, "A", text)
        self.assertEqual(self.messages.for_conversation(self.conv.id), [])
        self.assertEqual(self.fanout.events, [])

    def test_blank_text_is_rejected_before_lookup(self):
        with self.assertRaises(ValidationError):
            self.store.send_message("missing", "A", " ")

    def test_non_member_cannot_send(self):
        with self.assertRaises(ForbiddenError):
            self.store.send_message(self.conv.id, "C", "hi")
        self.assertEqual(self.messages.for_conversation(self.conv.id), [])
        self.assertEqual(self.fanout.events, [])

    def test_unknown_conversation(self):
        with self.assertRaises(NotFoundError):
            self.store.send_message("missing", "A", "hi")

    def test_recipients_must_be_a_list(self):
        with self.assertRaises(ValidationError):
            self.store.send_message(self.conv.id, "A", "hi", to="B")

    def test_failed_activity_bump_leaves_no_message(self):
        # a directory in place of the temp file makes the conversations rewrite fail
        os.mkdir(self.conversations.path + ".tmp")
        with self.assertRaises(TransientStoreError):
            self.store.send_message(self.conv.id, "A", "hello")

        self.assertEqual(self.messages.for_conversation(self.conv.id), [])
        self.assertEqual(MessagesRepo(self.messages.path).for_conversation(self.conv.id), [])
        self.assertEqual(self.conversations.get(self.conv.id).updated_ts, 1000)
        self.assertEqual(self.store.list_conversations("A")[0].last_message, None)
        self.assertEqual(self.fanout.events, [])


class TestListMessages(StoreTestCase):
    def test_listing_marks_delivered_once(self):
        msg = self.store.send_message(self.conv.id, "A", "hello")
        self.fanout.events.clear()

        messages = self.store.list_messages(self.conv.id, "B")
        self.assertEqual([m.text for m in messages], ["hello"])
        self.assertEqual(self.messages.get(msg.id).delivered_to, {"B"})
        self.assertEqual(self.fanout.types(), ["message:delivered"])
        self.assertEqual(self.fanout.events[0][1]["payload"]["messageIds"], [msg.id])

        self.store.list_messages(self.conv.id, "B")
        self.assertEqual(self.messages.get(msg.id).delivered_to, {"B"})
        # nothing new to deliver, so no second event
        self.assertEqual(len(self.fanout.events), 1)

    def test_sender_is_not_marked_delivered(self):
        msg = self.store.send_message(self.conv.id, "A", "hello")
        self.fanout.events.clear()
        self.store.list_messages(self.conv.id, "A")
        self.assertEqual(self.messages.get(msg.id).delivered_to, set())
        self.assertEqual(self.fanout.events, [])

    def test_delivery_survives_reload(self):
        msg = self.store.send_message(self.conv.id, "A", "hello")
        self.store.list_messages(self.conv.id, "B")
        reloaded = MessagesRepo(self.messages.path)
        self.assertEqual(reloaded.get(msg.id).delivered_to, {"B"})

    def test_messages_ordered_oldest_first(self):
        for ts, text in [(30, "third"), (10, "first"), (20, "second"), (20, "second-b")]:
            self.messages.append(Message(id=text, conversation_id=self.conv.id, from_user_id="A",
                                         text=text, created_ts=ts))
        messages = self.store.list_messages(self.conv.id, "B")
        self.assertEqual([m.text for m in messages], ["first", "second", "second-b", "third"])
        stamps = [m.created_ts for m in messages]
        self.assertEqual(stamps, sorted(stamps))

    def test_non_member_cannot_list(self):
        msg = self.store.send_message(self.conv.id, "A", "hello")
        self.fanout.events.clear()
        with self.assertRaises(ForbiddenError):
            self.store.list_messages(self.conv.id, "C")
        self.assertEqual(self.messages.get(msg.id).delivered_to, set())
        self.assertEqual(self.fanout.events, [])


class TestReadReceipts(StoreTestCase):
    def test_mark_conversation_read_is_idempotent(self):
        self.store.send_message(self.conv.id, "A", "hello")
        self.fanout.events.clear()

        self.assertEqual(self.store.mark_conversation_read(self.conv.id, "B"), 1)
        self.assertEqual(self.store.mark_conversation_read(self.conv.id, "B"), 0)
        read_events = [e for _, e in self.fanout.events if e["type"] == "message:read"]
        self.assertEqual(read_events[0]["payload"], {"conversationId": self.conv.id, "by": "B", "all": True})

    def test_own_messages_are_not_marked_read(self):
        msg = self.store.send_message(self.conv.id, "A", "hello")
        self.assertEqual(self.store.mark_conversation_read(self.conv.id, "A"), 0)
        self.assertEqual(self.messages.get(msg.id).read_by, set())

    def test_mark_single_message_read(self):
        msg = self.store.send_message(self.conv.id, "A", "hello")
        self.fanout.events.clear()

        self.assertTrue(self.store.mark_message_read(msg.id, "B"))
        self.assertFalse(self.store.mark_message_read(msg.id, "B"))
        self.assertEqual(self.messages.get(msg.id).read_by, {"B"})
        self.assertEqual(len(self.fanout.events), 1)
        self.assertEqual(self.fanout.events[0][1]["payload"],
                         {"conversationId": self.conv.id, "by": "B", "messageId": msg.id})

    def test_single_read_after_conversation_read_is_noop(self):
        msg = self.store.send_message(self.conv.id, "A", "hello")
        self.store.mark_conversation_read(self.conv.id, "B")
        self.assertFalse(self.store.mark_message_read(msg.id, "B"))
        self.assertEqual(self.messages.get(msg.id).read_by, {"B"})

    def test_read_requires_membership(self):
        msg = self.store.send_message(self.conv.id, "A", "hello")
        self.fanout.events.clear()
        with self.assertRaises(ForbiddenError):
            self.store.mark_conversation_read(self.conv.id, "C")
        with self.assertRaises(ForbiddenError):
            self.store.mark_message_read(msg.id, "C")
        self.assertEqual(self.messages.get(msg.id).read_by, set())
        self.assertEqual(self.fanout.events, [])

    def test_unknown_message(self):
        with self.assertRaises(NotFoundError):
            self.store.mark_message_read("missing", "B")


class TestListConversations(StoreTestCase):
    def test_preview_is_latest_message(self):
        for ts, text in [(1, "m1"), (2, "m2")]:
            self.messages.append(Message(id=text, conversation_id=self.conv.id, from_user_id="A",
                                         text=text, created_ts=ts))
        views = self.store.list_conversations("B")
        self.assertEqual(len(views), 1)
        self.assertEqual(views[0].last_message.id, "m2")
        self.assertEqual(views[0].to_dict()["lastMessage"]["text"], "m2")

    def test_preview_tie_goes_to_last_stored(self):
        # equal timestamps are resolved by store sequence
        for text in ["first", "second"]:
            self.messages.append(Message(id=text, conversation_id=self.conv.id, from_user_id="A",
                                         text=text, created_ts=5))
        self.assertEqual(self.store.list_conversations("A")[0].last_message.id, "second")

    def test_ordered_by_last_activity_with_empty_preview(self):
        older = self.conversations.create(["A", "C"], created_ts=10)
        newer = self.conversations.create(["A", "B", "C"], title="team", is_group=True, created_ts=20)
        self.conversations.create(["B", "C"], created_ts=30)

        views = self.store.list_conversations("A")
        self.assertEqual([v.conversation.id for v in views], [self.conv.id, newer.id, older.id])
        self.assertIsNone(views[1].last_message)
        self.assertIsNone(views[1].to_dict()["lastMessage"])

        self.store.send_message(older.id, "C", "ping")
        views = self.store.list_conversations("A")
        self.assertEqual(views[0].conversation.id, older.id)

    def test_listing_has_no_side_effects(self):
        msg = self.store.send_message(self.conv.id, "A", "hello")
        self.fanout.events.clear()
        self.store.list_conversations("B")
        self.assertEqual(self.messages.get(msg.id).delivered_to, set())
        self.assertEqual(self.fanout.events, [])


if __name__ == '__main__':
    unittest.main()
