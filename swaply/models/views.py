"""
Read models returned by the stores.

WHAT: Detached, JSON-ready views of conversations, messages and stats
WHY: Store transactions close before the gateway publishes; views outlive the session
HOW: Pydantic models built from ORM rows inside the transaction (see services.serializers)
"""

from datetime import datetime
from typing import Dict, List, Optional

from .content import ApiModel, MessageContent


class ReceiptEntry(ApiModel):
    """One recipient's delivered/read stamp."""
    user_id: str
    at: datetime


class EditSnapshot(ApiModel):
    content: str
    edited_at: datetime


class EditedInfo(ApiModel):
    is_edited: bool = False
    edited_at: Optional[datetime] = None
    original_content: Optional[str] = None
    history: List[EditSnapshot] = []


class DeletedInfo(ApiModel):
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[str] = None


class MessageView(ApiModel):
    """A message as any participant sees it."""
    id: str
    conversation_id: str
    sender_id: str
    recipients: List[str]
    type: str
    content: MessageContent
    display_content: str
    status: str
    read_by: List[ReceiptEntry] = []
    delivered_to: List[ReceiptEntry] = []
    reply_to: Optional[str] = None
    edited: EditedInfo = EditedInfo()
    deleted: DeletedInfo = DeletedInfo()
    created_at: datetime
    updated_at: datetime


class ConversationView(ApiModel):
    """A conversation from one participant's point of view."""
    id: str
    participants: List[str]
    publication_id: Optional[str] = None
    publication_title: Optional[str] = None
    status: str
    is_archived: bool = False
    is_blocked: bool = False
    unread_count: Dict[str, int]
    last_message: Optional[MessageView] = None
    last_message_at: datetime
    total_messages: int = 0
    created_at: datetime


class MessageStats(ApiModel):
    total_messages: int
    sent_messages: int
    received_messages: int
    total_conversations: int
    unread_messages: int
