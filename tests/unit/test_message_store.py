"""
Message store tests.

WHAT: send / list / edit / soft delete / stats and the counters they maintain
WHY: Unread counters and lastMessage must agree with the stored history
HOW: MessageStore + ConversationStore sharing a fake clock
"""

import pytest

from swaply.core.config import settings
from swaply.services.conversation_store import ConversationStore
from swaply.services.formatting import DELETED_PLACEHOLDER
from swaply.services.message_store import MessageStore
from swaply.utils.exceptions import (
    ConversationNotFoundException,
    EditWindowExpiredException,
    InvalidContentException,
    MessageNotFoundException,
    NotAuthorException,
    NotParticipantException,
    WrongTypeException,
)

pytestmark = pytest.mark.unit

PHOTO = {"url": "/uploads/messages/bici.jpg", "filename": "bici.jpg", "size": 2048, "mimeType": "image/jpeg"}


@pytest.fixture
def conversations(clock):
    return ConversationStore(clock=clock)


@pytest.fixture
def store(clock):
    return MessageStore(clock=clock)


@pytest.fixture
def conversation(conversations, users):
    view, _ = conversations.get_or_create(users.a, users.b)
    return view


def text(body: str) -> dict:
    return {"type": "text", "text": body}


class TestSend:
    """Sending and its side effects."""

    def test_text_message_updates_conversation(self, store, conversations, conversation, users):
        message = store.send(conversation.id, users.a, text("  Hola, ¿sigue disponible?  "))

        assert message.content.text == "Hola, ¿sigue disponible?"
        assert message.recipients == [users.b]
        assert message.status == "sent"

        view = conversations.get_for_user(conversation.id, users.a)
        assert view.unread_count == {users.a: 0, users.b: 1}
        assert view.total_messages == 1
        assert view.last_message.id == message.id

    def test_unread_counts_every_message(self, store, conversations, conversation, users, clock):
        for body in ("uno", "dos", "tres"):
            store.send(conversation.id, users.a, text(body))
            clock.advance(seconds=1)
        store.send(conversation.id, users.b, text("respuesta"))

        view = conversations.get_for_user(conversation.id, users.b)
        assert view.unread_count == {users.a: 1, users.b: 3}
        assert view.total_messages == 4

    def test_empty_text_rejected(self, store, conversation, users):
        with pytest.raises(InvalidContentException):
            store.send(conversation.id, users.a, text("   "))

    def test_text_too_long(self, store, conversation, users):
        with pytest.raises(InvalidContentException):
            store.send(conversation.id, users.a, text("x" * (settings.MAX_MESSAGE_LENGTH + 1)))

    def test_image_requires_attachment(self, store, conversation, users):
        with pytest.raises(InvalidContentException):
            store.send(conversation.id, users.a, {"type": "image", "text": "mira"})

    def test_image_with_attachment(self, store, conversation, users):
        message = store.send(conversation.id, users.a, {"type": "image", "attachment": PHOTO})

        assert message.type == "image"
        assert message.content.attachment.filename == "bici.jpg"
        assert message.display_content == "Imagen compartida"

    def test_file_display(self, store, conversation, users):
        manual = dict(PHOTO, filename="manual.pdf", mimeType="application/pdf")
        message = store.send(conversation.id, users.a, {"type": "file", "attachment": manual})
        assert message.display_content == "Archivo: manual.pdf"

    def test_location(self, store, conversation, users):
        message = store.send(conversation.id, users.a, {
            "type": "location",
            "address": "Plaza Mayor, Madrid",
            "coordinates": [-3.7074, 40.4155],
            "name": "Plaza Mayor",
        })
        assert message.content.coordinates == [-3.7074, 40.4155]
        assert message.display_content == "Ubicación: Plaza Mayor"

    def test_location_out_of_range(self, store, conversation, users):
        with pytest.raises(InvalidContentException):
            store.send(conversation.id, users.a, {
                "type": "location", "address": "?", "coordinates": [200.0, 10.0],
            })

    def test_proposal_type_not_sendable(self, store, conversation, users):
        with pytest.raises(InvalidContentException):
            store.send(conversation.id, users.a, {"type": "exchange_proposal", "text": "x"})

    def test_outsider_cannot_send(self, store, conversation, users):
        with pytest.raises(NotParticipantException):
            store.send(conversation.id, users.c, text("hola"))

    def test_outsider_checked_before_content(self, store, conversation, users):
        with pytest.raises(NotParticipantException):
            store.send(conversation.id, users.c, text(""))

    def test_unknown_conversation(self, store, users):
        with pytest.raises(ConversationNotFoundException):
            store.send("missing", users.a, text("hola"))

    def test_reply_must_be_in_same_conversation(self, store, conversations, conversation, users):
        other, _ = conversations.get_or_create(users.a, users.c)
        elsewhere = store.send(other.id, users.a, text("hola C"))
        here = store.send(conversation.id, users.a, text("hola B"))

        reply = store.send(conversation.id, users.b, text("hola A"), reply_to=here.id)
        assert reply.reply_to == here.id

        with pytest.raises(InvalidContentException):
            store.send(conversation.id, users.b, text("¿?"), reply_to=elsewhere.id)


class TestList:
    """History paging and read-on-fetch."""

    def test_pages_newest_first_oldest_first_within_page(self, store, conversation, users, clock):
        sent = []
        for i in range(5):
            sent.append(store.send(conversation.id, users.a, text(f"mensaje {i}")).id)
            clock.advance(seconds=1)

        first = store.list(conversation.id, users.a, page=1, limit=2)
        last = store.list(conversation.id, users.a, page=3, limit=2)

        assert first.total == 5
        assert [m.id for m in first.items] == sent[3:]
        assert [m.id for m in last.items] == sent[:1]

    def test_same_timestamp_keeps_insertion_order(self, store, conversation, users):
        ids = [store.send(conversation.id, users.a, text(str(i))).id for i in range(3)]
        page = store.list(conversation.id, users.a)
        assert [m.id for m in page.items] == ids

    def test_fetch_marks_read(self, store, conversations, conversation, users):
        store.send(conversation.id, users.a, text("uno"))
        store.send(conversation.id, users.a, text("dos"))

        page = store.list(conversation.id, users.b)

        assert {m.status for m in page.items} == {"read"}
        assert len(page.updated) == 2
        assert conversations.get_for_user(conversation.id, users.b).unread_count[users.b] == 0

    def test_fetch_without_marking(self, store, conversations, conversation, users):
        store.send(conversation.id, users.a, text("uno"))

        page = store.list(conversation.id, users.b, mark_read=False)

        assert page.items[0].status == "sent"
        assert page.updated == []
        assert conversations.get_for_user(conversation.id, users.b).unread_count[users.b] == 1

    def test_sender_fetch_does_not_read_own_messages(self, store, conversation, users):
        store.send(conversation.id, users.a, text("uno"))
        page = store.list(conversation.id, users.a)
        assert page.items[0].status == "sent"

    def test_mark_read_is_idempotent(self, store, conversation, users):
        store.send(conversation.id, users.a, text("uno"))

        assert len(store.mark_read(conversation.id, users.b)) == 1
        assert store.mark_read(conversation.id, users.b) == []

    def test_outsider_cannot_list(self, store, conversation, users):
        with pytest.raises(NotParticipantException):
            store.list(conversation.id, users.c)


class TestEdit:
    """Editing text messages."""

    def test_edit_keeps_history(self, store, conversation, users, clock):
        message = store.send(conversation.id, users.a, text("Vendo por 50"))
        clock.advance(minutes=1)
        store.edit(message.id, users.a, "Vendo por 45")
        clock.advance(minutes=1)
        edited = store.edit(message.id, users.a, "Vendo por 40")

        assert edited.content.text == "Vendo por 40"
        assert edited.edited.is_edited is True
        assert edited.edited.edited_at == clock.now
        assert [h.content for h in edited.edited.history] == ["Vendo por 50", "Vendo por 45"]
        assert edited.edited.original_content == "Vendo por 45"

    def test_only_author_edits(self, store, conversation, users):
        message = store.send(conversation.id, users.a, text("hola"))
        with pytest.raises(NotAuthorException):
            store.edit(message.id, users.b, "adiós")

    def test_only_text_is_editable(self, store, conversation, users):
        message = store.send(conversation.id, users.a, {"type": "image", "attachment": PHOTO})
        with pytest.raises(WrongTypeException):
            store.edit(message.id, users.a, "otra cosa")

    def test_empty_edit_rejected(self, store, conversation, users):
        message = store.send(conversation.id, users.a, text("hola"))
        with pytest.raises(InvalidContentException):
            store.edit(message.id, users.a, "  ")

    def test_edit_window(self, store, conversation, users, clock):
        message = store.send(conversation.id, users.a, text("hola"))
        clock.advance(minutes=settings.MESSAGE_EDIT_WINDOW_MINUTES + 1)
        with pytest.raises(EditWindowExpiredException):
            store.edit(message.id, users.a, "hola de nuevo")

    def test_unknown_message(self, store, users):
        with pytest.raises(MessageNotFoundException):
            store.edit("missing", users.a, "x")


class TestSoftDelete:
    """Soft delete hides content but keeps the slot in history."""

    def test_placeholder_replaces_content(self, store, conversation, users):
        message = store.send(conversation.id, users.a, text("número: 600 000 000"))
        store.edit(message.id, users.a, "número: 600 111 111")

        deleted = store.soft_delete(message.id, users.a)

        assert deleted.deleted.is_deleted is True
        assert deleted.deleted.deleted_by == users.a
        assert deleted.content.text == DELETED_PLACEHOLDER
        assert deleted.display_content == DELETED_PLACEHOLDER
        assert deleted.edited.history == []

        page = store.list(conversation.id, users.b)
        assert page.total == 1
        assert page.items[0].content.text == DELETED_PLACEHOLDER

    def test_unread_message_taken_off_counter(self, store, conversations, conversation, users):
        keep = store.send(conversation.id, users.a, text("uno"))
        gone = store.send(conversation.id, users.a, text("dos"))

        store.soft_delete(gone.id, users.a)

        view = conversations.get_for_user(conversation.id, users.b)
        assert view.unread_count[users.b] == 1
        assert keep.id != gone.id

    def test_read_message_does_not_touch_counter(self, store, conversations, conversation, users):
        message = store.send(conversation.id, users.a, text("uno"))
        store.mark_read(conversation.id, users.b)
        store.send(conversation.id, users.a, text("dos"))

        store.soft_delete(message.id, users.a)

        assert conversations.get_for_user(conversation.id, users.b).unread_count[users.b] == 1

    def test_only_author_deletes(self, store, conversation, users):
        message = store.send(conversation.id, users.a, text("hola"))
        with pytest.raises(NotAuthorException):
            store.soft_delete(message.id, users.b)

    def test_deleted_message_cannot_be_edited_or_deleted_again(self, store, conversation, users):
        message = store.send(conversation.id, users.a, text("hola"))
        store.soft_delete(message.id, users.a)

        with pytest.raises(MessageNotFoundException):
            store.edit(message.id, users.a, "otra")
        with pytest.raises(MessageNotFoundException):
            store.soft_delete(message.id, users.a)


class TestStats:

    def test_stats_for_user(self, store, conversations, conversation, users):
        store.send(conversation.id, users.a, text("uno"))
        store.send(conversation.id, users.a, text("dos"))
        store.send(conversation.id, users.b, text("tres"))
        conversations.get_or_create(users.b, users.c)

        stats = store.stats_for_user(users.b)

        assert stats.sent_messages == 1
        assert stats.received_messages == 2
        assert stats.total_messages == 3
        assert stats.total_conversations == 2
        assert stats.unread_messages == 2
