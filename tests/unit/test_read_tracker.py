"""
Read/delivery tracker tests.

WHAT: Receipts, message-level status roll-up and unread counters
WHY: Status is the minimum across recipients and counters must match receipts
HOW: ReadTracker and MessageStore over a fresh schema
"""

import pytest

from swaply.services.conversation_store import ConversationStore
from swaply.services.message_store import MessageStore
from swaply.services.read_tracker import ReadTracker

pytestmark = pytest.mark.unit


@pytest.fixture
def tracker(clock):
    return ReadTracker(clock=clock)


@pytest.fixture
def store(clock):
    return MessageStore(clock=clock)


@pytest.fixture
def conversations(clock):
    return ConversationStore(clock=clock)


@pytest.fixture
def conversation(conversations, users):
    view, _ = conversations.get_or_create(users.a, users.b)
    return view


class TestDelivery:

    def test_live_push_marks_delivered(self, tracker, store, conversation, users, clock):
        message = store.send(conversation.id, users.a, {"type": "text", "text": "hola"})

        updated = tracker.mark_delivered(message.id, [users.b])

        assert updated.status == "delivered"
        assert updated.delivered_to[0].user_id == users.b
        assert updated.delivered_to[0].at == clock.now
        assert updated.read_by == []

    def test_delivered_once(self, tracker, store, conversation, users):
        message = store.send(conversation.id, users.a, {"type": "text", "text": "hola"})
        tracker.mark_delivered(message.id, [users.b])
        assert tracker.mark_delivered(message.id, [users.b]) is None

    def test_sender_is_not_a_recipient(self, tracker, store, conversation, users):
        message = store.send(conversation.id, users.a, {"type": "text", "text": "hola"})
        assert tracker.mark_delivered(message.id, [users.a]) is None


class TestRead:

    def test_read_implies_delivered(self, tracker, store, conversation, users, clock):
        message = store.send(conversation.id, users.a, {"type": "text", "text": "hola"})
        clock.advance(minutes=5)

        updated = tracker.mark_read(conversation.id, users.b)

        assert [m.id for m in updated] == [message.id]
        assert updated[0].status == "read"
        assert updated[0].read_by[0].at == clock.now
        assert updated[0].delivered_to[0].at == clock.now

    def test_read_after_delivery_keeps_delivery_time(self, tracker, store, conversation, users, clock):
        message = store.send(conversation.id, users.a, {"type": "text", "text": "hola"})
        delivered_at = clock.now
        tracker.mark_delivered(message.id, [users.b])
        clock.advance(minutes=5)

        updated = tracker.mark_read(conversation.id, users.b)

        assert updated[0].delivered_to[0].at == delivered_at
        assert updated[0].read_by[0].at == clock.now

    def test_zeroes_unread_counter(self, tracker, store, conversations, conversation, users):
        for body in ("uno", "dos", "tres"):
            store.send(conversation.id, users.a, {"type": "text", "text": body})
        assert conversations.get_for_user(conversation.id, users.b).unread_count[users.b] == 3

        tracker.mark_read(conversation.id, users.b)

        view = conversations.get_for_user(conversation.id, users.b)
        assert view.unread_count == {users.a: 0, users.b: 0}

    def test_only_reader_receipts_change(self, tracker, store, conversation, users):
        mine = store.send(conversation.id, users.b, {"type": "text", "text": "de B"})
        theirs = store.send(conversation.id, users.a, {"type": "text", "text": "de A"})

        updated = tracker.mark_read(conversation.id, users.b)

        assert [m.id for m in updated] == [theirs.id]
        assert mine.status == "sent"
