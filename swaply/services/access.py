"""
Lookup and membership checks shared by the stores.

WHAT: Load conversations/messages inside an open session and enforce participation
WHY: Referential integrity between the two aggregates is checked in application code
HOW: Plain functions taking the caller's session; raise typed business exceptions
"""

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..core.models import Conversation, Message
from ..utils.exceptions import (
    ConversationNotFoundException,
    MessageNotFoundException,
    NotParticipantException,
)


def conversation_key(participant_ids, publication_id=None) -> str:
    """
    Build the unique key of a (participant-set, publication) pair.

    Order of participant_ids does not matter: {A, B} and {B, A} share a key.
    """
    members = "|".join(sorted(set(participant_ids)))
    return f"{members}#{publication_id or '-'}"


def load_conversation(db: Session, conversation_id: str) -> Conversation:
    conversation = db.scalars(
        select(Conversation).where(Conversation.conversation_id == conversation_id)
    ).first()
    if conversation is None:
        raise ConversationNotFoundException(conversation_id)
    return conversation


def require_participant(db: Session, conversation_id: str, user_id: str) -> Conversation:
    """
    Load a conversation and check that user_id belongs to it.

    Raises:
        ConversationNotFoundException: no such conversation
        NotParticipantException: user is not a participant
    """
    conversation = load_conversation(db, conversation_id)
    if conversation.participant(user_id) is None:
        raise NotParticipantException(conversation_id, user_id)
    return conversation


def load_message(db: Session, message_id: str, include_deleted: bool = False) -> Message:
    """Load a message by public id; soft-deleted messages count as missing unless asked for."""
    message = db.scalars(select(Message).where(Message.message_id == message_id)).first()
    if message is None or (message.is_deleted and not include_deleted):
        raise MessageNotFoundException(message_id)
    return message


def load_messages(db: Session, message_db_ids) -> list[Message]:
    """Load messages by insertion id, in insertion order."""
    if not message_db_ids:
        return []
    return list(db.scalars(
        select(Message).where(Message.id.in_(list(message_db_ids))).order_by(Message.id)
    ).all())
