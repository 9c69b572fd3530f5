"""
ORM to view conversion.

WHAT: Build MessageView / ConversationView from ORM rows
WHY: Views must be complete before the store transaction closes
HOW: Called inside get_db() blocks; relationships are selectin-loaded
"""

from typing import Optional

from ..core.models import Conversation, Message, MessageType
from ..models.content import (
    TextContent, ImageContent, FileContent, LocationContent,
    ProposalContent, ExchangeResponseContent, SystemContent,
)
from ..models.views import (
    ConversationView, DeletedInfo, EditedInfo, EditSnapshot, MessageView, ReceiptEntry
)
from .formatting import DELETED_PLACEHOLDER, display_text


def message_content(message: Message):
    """Rebuild the typed content variant stored across the message columns."""
    if message.type == MessageType.TEXT:
        return TextContent(text=message.text or "")
    if message.type == MessageType.IMAGE:
        return ImageContent(attachment=message.attachment, text=message.text)
    if message.type == MessageType.FILE:
        return FileContent(attachment=message.attachment, text=message.text)
    if message.type == MessageType.LOCATION:
        return LocationContent.model_validate(message.location)
    if message.type == MessageType.EXCHANGE_PROPOSAL:
        proposal = message.proposal
        return ProposalContent(
            text=message.text or "",
            offered_items=proposal.offered_items,
            requested_items=proposal.requested_items,
            terms=proposal.terms or "",
            status=proposal.status.value,
            proposed_by=proposal.proposed_by,
            expiration_date=proposal.expiration_date,
            responded_by=proposal.responded_by,
            responded_at=proposal.responded_at,
            previous_proposal_id=proposal.previous_proposal_id,
            counter_proposal_id=proposal.counter_proposal_id,
        )
    if message.type == MessageType.EXCHANGE_RESPONSE:
        return ExchangeResponseContent(text=message.text or "")
    if message.type == MessageType.SYSTEM:
        return SystemContent(text=message.text or "", event=message.system_event, data=message.system_data)
    raise ValueError(f"Unknown message type: {message.type}")


def message_view(message: Message) -> MessageView:
    """
    Serialize a message.

    Soft-deleted messages expose the placeholder only: the stored text,
    attachment and edit history never leave the store.
    """
    deleted = DeletedInfo(
        is_deleted=message.is_deleted,
        deleted_at=message.deleted_at,
        deleted_by=message.deleted_by,
    )

    if message.is_deleted:
        content = TextContent(text=DELETED_PLACEHOLDER)
        display = DELETED_PLACEHOLDER
        edited = EditedInfo(is_edited=message.is_edited, edited_at=message.edited_at)
    else:
        content = message_content(message)
        display = display_text(content)
        history = [EditSnapshot(content=e.content, edited_at=e.edited_at) for e in message.edits]
        edited = EditedInfo(
            is_edited=message.is_edited,
            edited_at=message.edited_at,
            original_content=history[-1].content if history else None,
            history=history,
        )

    return MessageView(
        id=message.message_id,
        conversation_id=message.conversation_id,
        sender_id=message.sender_id,
        recipients=message.recipient_ids(),
        type=message.type.value,
        content=content,
        display_content=display,
        status=message.status.value,
        read_by=[ReceiptEntry(user_id=r.user_id, at=r.read_at) for r in message.receipts if r.read_at],
        delivered_to=[
            ReceiptEntry(user_id=r.user_id, at=r.delivered_at) for r in message.receipts if r.delivered_at
        ],
        reply_to=message.reply_to_id,
        edited=edited,
        deleted=deleted,
        created_at=message.created_at,
        updated_at=message.updated_at,
    )


def conversation_view(
    conversation: Conversation,
    viewer_id: str,
    last_message: Optional[Message] = None,
    publication_title: Optional[str] = None,
) -> ConversationView:
    """Serialize a conversation with the viewer's per-participant flags."""
    me = conversation.participant(viewer_id)
    return ConversationView(
        id=conversation.conversation_id,
        participants=conversation.participant_ids(),
        publication_id=conversation.publication_id,
        publication_title=publication_title,
        status=me.status if me else "active",
        is_archived=bool(me and me.is_archived),
        is_blocked=bool(me and me.is_blocked),
        unread_count={p.user_id: p.unread_count for p in conversation.participants},
        last_message=message_view(last_message) if last_message is not None else None,
        last_message_at=conversation.last_message_at,
        total_messages=conversation.total_messages,
        created_at=conversation.created_at,
    )
