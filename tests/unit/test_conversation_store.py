"""
Conversation store tests.

WHAT: get-or-create, listing, per-participant status and maintenance archiving
WHY: Conversation identity must be stable and per-user flags must stay per-user
HOW: ConversationStore/MessageStore against a fresh SQLite schema with a fake clock
"""

import pytest

from swaply.services.conversation_store import ConversationStore
from swaply.services.message_store import MessageStore
from swaply.utils.exceptions import (
    ConversationNotFoundException,
    InvalidContentException,
    InvalidParticipantException,
    NotParticipantException,
    PublicationNotFoundException,
)

pytestmark = pytest.mark.unit


@pytest.fixture
def conversations(clock):
    return ConversationStore(clock=clock)


@pytest.fixture
def messages(clock):
    return MessageStore(clock=clock)


class TestGetOrCreate:
    """Conversation identity."""

    def test_creates_then_returns_existing(self, conversations, users):
        first, created = conversations.get_or_create(users.a, users.b)
        second, created_again = conversations.get_or_create(users.b, users.a)

        assert created is True
        assert created_again is False
        assert first.id == second.id
        assert sorted(first.participants) == [users.a, users.b]
        assert first.unread_count == {users.a: 0, users.b: 0}
        assert first.total_messages == 0

    def test_publication_scopes_identity(self, conversations, users):
        general, _ = conversations.get_or_create(users.a, users.b)
        about_bike, created = conversations.get_or_create(users.a, users.b, users.pub1)

        assert created is True
        assert about_bike.id != general.id
        assert about_bike.publication_id == users.pub1
        assert about_bike.publication_title == "Bicicleta de montaña"

    def test_rejects_self_conversation(self, conversations, users):
        with pytest.raises(InvalidParticipantException):
            conversations.get_or_create(users.a, users.a)

    def test_rejects_unknown_user(self, conversations, users):
        with pytest.raises(InvalidParticipantException) as exc_info:
            conversations.get_or_create(users.a, "nobody")
        assert exc_info.value.message == "Usuario no encontrado"

    def test_rejects_unknown_publication(self, conversations, users):
        with pytest.raises(PublicationNotFoundException):
            conversations.get_or_create(users.a, users.b, "pub-missing")


class TestListing:
    """list_for_user ordering and visibility."""

    def test_most_recent_activity_first(self, conversations, messages, users, clock):
        with_b, _ = conversations.get_or_create(users.a, users.b)
        clock.advance(minutes=1)
        with_c, _ = conversations.get_or_create(users.a, users.c)

        clock.advance(minutes=1)
        messages.send(with_b.id, users.b, {"type": "text", "text": "¿Sigue disponible?"})

        page = conversations.list_for_user(users.a)
        assert [c.id for c in page.items] == [with_b.id, with_c.id]
        assert page.total == 2
        assert page.items[0].last_message.display_content == "¿Sigue disponible?"

    def test_listing_marks_messages_delivered(self, conversations, messages, users):
        conversation, _ = conversations.get_or_create(users.a, users.b)
        sent = messages.send(conversation.id, users.a, {"type": "text", "text": "Hola"})
        assert sent.status == "sent"

        page = conversations.list_for_user(users.b)

        assert [m.id for m in page.delivered] == [sent.id]
        assert page.delivered[0].status == "delivered"
        assert [entry.user_id for entry in page.delivered[0].delivered_to] == [users.b]

        # Second listing has nothing new to deliver
        assert conversations.list_for_user(users.b).delivered == []

    def test_archived_hidden_unless_requested(self, conversations, users):
        conversation, _ = conversations.get_or_create(users.a, users.b)
        conversations.set_status(conversation.id, users.a, "archive")

        assert conversations.list_for_user(users.a).items == []
        assert [c.id for c in conversations.list_for_user(users.a, include_archived=True).items] == [conversation.id]
        # Archiving is per participant
        assert [c.id for c in conversations.list_for_user(users.b).items] == [conversation.id]

    def test_soft_delete_hides_until_new_message(self, conversations, messages, users):
        conversation, _ = conversations.get_or_create(users.a, users.b)
        conversations.soft_delete_for_user(conversation.id, users.a)

        assert conversations.list_for_user(users.a).items == []
        assert len(conversations.list_for_user(users.b).items) == 1

        messages.send(conversation.id, users.b, {"type": "text", "text": "¿Hablamos?"})
        assert [c.id for c in conversations.list_for_user(users.a).items] == [conversation.id]

    def test_pagination(self, conversations, users, clock):
        for other in (users.b, users.c):
            conversations.get_or_create(users.a, other)
            clock.advance(seconds=1)

        page = conversations.list_for_user(users.a, page=2, limit=1)
        assert page.total == 2
        assert len(page.items) == 1


class TestStatus:
    """Per-participant archive/block flags."""

    def test_block_is_per_participant(self, conversations, users):
        conversation, _ = conversations.get_or_create(users.a, users.b)

        view = conversations.set_status(conversation.id, users.b, "block")

        assert view.is_blocked is True
        assert conversations.get_for_user(conversation.id, users.a).is_blocked is False
        assert conversations.blocked_user_ids(conversation.id) == {users.b}

        conversations.set_status(conversation.id, users.b, "unblock")
        assert conversations.blocked_user_ids(conversation.id) == set()

    def test_unknown_action(self, conversations, users):
        conversation, _ = conversations.get_or_create(users.a, users.b)
        with pytest.raises(InvalidContentException):
            conversations.set_status(conversation.id, users.a, "mute")

    def test_outsider_cannot_read(self, conversations, users):
        conversation, _ = conversations.get_or_create(users.a, users.b)
        with pytest.raises(NotParticipantException):
            conversations.get_for_user(conversation.id, users.c)

    def test_unknown_conversation(self, conversations, users):
        with pytest.raises(ConversationNotFoundException):
            conversations.get_for_user("missing", users.a)


class TestMaintenance:
    """Inactive conversations get archived for everyone."""

    def test_archive_inactive(self, conversations, users, clock):
        stale, _ = conversations.get_or_create(users.a, users.b)
        clock.advance(days=60)
        recent, _ = conversations.get_or_create(users.a, users.c)
        clock.advance(days=31)

        archived = conversations.archive_inactive(days=90)

        assert archived == 2
        assert conversations.get_for_user(stale.id, users.a).is_archived is True
        assert conversations.get_for_user(recent.id, users.a).is_archived is False
        assert conversations.archive_inactive(days=90) == 0

    def test_gateway_lookups(self, conversations, users):
        with_b, _ = conversations.get_or_create(users.a, users.b)
        with_c, _ = conversations.get_or_create(users.a, users.c)

        assert sorted(conversations.conversation_ids_for_user(users.a)) == sorted([with_b.id, with_c.id])
        assert conversations.conversation_ids_for_user(users.b) == [with_b.id]
        assert sorted(conversations.participant_ids(with_c.id)) == [users.a, users.c]
