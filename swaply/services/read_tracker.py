"""
Read/Delivery Tracker.

WHAT: Advance delivered/read markers and keep unread counters consistent
WHY: Shared by the REST read path, the list path and socket read acks
HOW: Set-based SQL updates (atomic increments, never read-modify-write in Python)
     plus a roll-up of receipts into the message-level minimum status
"""

from datetime import datetime
from typing import Callable, Iterable, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from ..core.database import get_db
from ..core.models import ConversationParticipant, DeliveryStatus, Message, MessageReceipt
from ..models.views import MessageView
from ..utils.logger import get_logger
from .access import load_message, load_messages, require_participant
from .serializers import message_view

logger = get_logger(__name__)


# ========== Session-level helpers (compose inside a store transaction) ==========

def increment_unread(db: Session, conversation_db_id: int, sender_id: str):
    """
    Count a new message for every participant except the sender.

    Any per-user soft delete is cleared so the conversation resurfaces.
    """
    db.execute(
        update(ConversationParticipant)
        .where(
            ConversationParticipant.conversation_db_id == conversation_db_id,
            ConversationParticipant.user_id != sender_id,
        )
        .values(unread_count=ConversationParticipant.unread_count + 1)
        .execution_options(synchronize_session=False)
    )
    db.execute(
        update(ConversationParticipant)
        .where(
            ConversationParticipant.conversation_db_id == conversation_db_id,
            ConversationParticipant.deleted_at.is_not(None),
        )
        .values(deleted_at=None)
        .execution_options(synchronize_session=False)
    )


def discount_unread(db: Session, conversation_db_id: int, message: Message):
    """Take a message out of the unread counters of recipients that never read it."""
    pending = [r.user_id for r in message.receipts if r.read_at is None]
    if not pending:
        return
    db.execute(
        update(ConversationParticipant)
        .where(
            ConversationParticipant.conversation_db_id == conversation_db_id,
            ConversationParticipant.user_id.in_(pending),
            ConversationParticipant.unread_count > 0,
        )
        .values(unread_count=ConversationParticipant.unread_count - 1)
        .execution_options(synchronize_session=False)
    )


def roll_up_status(db: Session, message_db_ids: Iterable[int]) -> List[int]:
    """
    Recompute message-level status as the minimum across recipients.

    Returns:
        Insertion ids of messages whose status changed
    """
    ids = list(set(message_db_ids))
    if not ids:
        return []

    rows = db.execute(
        select(
            MessageReceipt.message_db_id,
            func.count(MessageReceipt.id),
            func.count(MessageReceipt.delivered_at),
            func.count(MessageReceipt.read_at),
        )
        .where(MessageReceipt.message_db_id.in_(ids))
        .group_by(MessageReceipt.message_db_id)
    ).all()

    changed = []
    for message_db_id, total, delivered, read in rows:
        if read == total:
            status = DeliveryStatus.READ
        elif delivered == total:
            status = DeliveryStatus.DELIVERED
        else:
            status = DeliveryStatus.SENT
        result = db.execute(
            update(Message)
            .where(Message.id == message_db_id, Message.status != status)
            .values(status=status)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            changed.append(message_db_id)
    return changed


def mark_conversation_read(db: Session, conversation, user_id: str, now: datetime) -> List[int]:
    """
    Mark every unread receipt of user_id in the conversation as read.

    Stamps readAt (and deliveredAt where missing), zeroes the participant's
    counter and stamps lastReadAt. A second call changes nothing.

    Returns:
        Insertion ids of messages whose status changed
    """
    pending_filter = (
        MessageReceipt.conversation_id == conversation.conversation_id,
        MessageReceipt.user_id == user_id,
        MessageReceipt.read_at.is_(None),
    )
    message_db_ids = db.scalars(select(MessageReceipt.message_db_id).where(*pending_filter)).all()

    participant_filter = (
        ConversationParticipant.conversation_db_id == conversation.id,
        ConversationParticipant.user_id == user_id,
    )
    if message_db_ids:
        db.execute(
            update(MessageReceipt)
            .where(*pending_filter)
            .values(read_at=now, delivered_at=func.coalesce(MessageReceipt.delivered_at, now))
            .execution_options(synchronize_session=False)
        )
        db.execute(
            update(ConversationParticipant)
            .where(*participant_filter)
            .values(unread_count=0, last_read_at=now)
            .execution_options(synchronize_session=False)
        )
    else:
        db.execute(
            update(ConversationParticipant)
            .where(*participant_filter, ConversationParticipant.unread_count != 0)
            .values(unread_count=0, last_read_at=now)
            .execution_options(synchronize_session=False)
        )

    return roll_up_status(db, message_db_ids)


def mark_delivered(
    db: Session,
    user_id: str,
    now: datetime,
    message_db_ids: Optional[Iterable[int]] = None,
    conversation_ids: Optional[Iterable[str]] = None,
) -> List[int]:
    """
    Stamp deliveredAt on user_id's undelivered receipts.

    Scope by message insertion ids, conversation ids, or both.

    Returns:
        Insertion ids of messages whose status changed
    """
    query = select(MessageReceipt.message_db_id).where(
        MessageReceipt.user_id == user_id,
        MessageReceipt.delivered_at.is_(None),
    )
    if message_db_ids is not None:
        query = query.where(MessageReceipt.message_db_id.in_(list(message_db_ids)))
    if conversation_ids is not None:
        query = query.where(MessageReceipt.conversation_id.in_(list(conversation_ids)))

    pending = db.scalars(query).all()
    if not pending:
        return []

    db.execute(
        update(MessageReceipt)
        .where(
            MessageReceipt.user_id == user_id,
            MessageReceipt.message_db_id.in_(pending),
            MessageReceipt.delivered_at.is_(None),
        )
        .values(delivered_at=now)
        .execution_options(synchronize_session=False)
    )
    return roll_up_status(db, pending)


# ========== Transactional operations ==========

class ReadTracker:
    """
    Read/delivery operations that run as their own unit of work.

    Returned views are the messages whose message-level status changed, so the
    caller can push message.updated to their senders.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or datetime.utcnow

    def mark_read(self, conversation_id: str, user_id: str) -> List[MessageView]:
        with get_db() as db:
            conversation = require_participant(db, conversation_id, user_id)
            changed = mark_conversation_read(db, conversation, user_id, self._clock())
            db.expire_all()
            views = [message_view(m) for m in load_messages(db, changed)]

        if changed:
            logger.debug(f"User {user_id} read {len(changed)} messages in {conversation_id}")
        return views

    def mark_delivered(self, message_id: str, user_ids: Iterable[str]) -> Optional[MessageView]:
        """Record a live push of message_id to user_ids; returns the view if its status moved."""
        now = self._clock()
        with get_db() as db:
            message = load_message(db, message_id, include_deleted=True)
            recipients = set(message.recipient_ids())
            changed = []
            for user_id in set(user_ids) & recipients:
                changed.extend(mark_delivered(db, user_id, now, message_db_ids=[message.id]))
            if not changed:
                return None
            db.expire_all()
            return message_view(message)
