"""
Message Store.

WHAT: Send, list, edit, soft-delete and read-mark messages
WHY: Messages are the durable history; every mutation is all-or-nothing
HOW: One get_db() unit of work per operation; insert_message() is the single
     write path shared with the negotiation engine
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Union

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.database import get_db, retry_read
from ..core.models import (
    Conversation, ConversationParticipant, ExchangeProposal, Message, MessageEdit,
    MessageReceipt, MessageType, ProposalStatus, new_id,
)
from ..models.content import (
    FileContent, ImageContent, LocationContent, TextContent, parse_payload,
)
from ..models.views import MessageStats, MessageView
from ..utils.exceptions import (
    EditWindowExpiredException,
    InvalidContentException,
    NotAuthorException,
    WrongTypeException,
)
from ..utils.logger import get_logger
from .access import load_conversation, load_message, load_messages, require_participant
from .read_tracker import ReadTracker, discount_unread, increment_unread, mark_conversation_read
from .serializers import message_view

logger = get_logger(__name__)


@dataclass
class MessagePage:
    """
    A page of history, oldest to newest.

    updated holds messages whose state changed as a side effect of the read
    (expired proposals, read receipts) so their senders can be told.
    """
    items: List[MessageView]
    total: int
    page: int
    limit: int
    updated: List[MessageView] = field(default_factory=list)


def validate_text(text: Optional[str], required: bool = True) -> Optional[str]:
    """
    Strip and bound message text.

    Raises:
        InvalidContentException: empty (when required) or longer than MAX_MESSAGE_LENGTH
    """
    text = (text or "").strip()
    if not text:
        if required:
            raise InvalidContentException("El contenido del mensaje no puede estar vacío")
        return None
    if len(text) > settings.MAX_MESSAGE_LENGTH:
        raise InvalidContentException(
            f"El mensaje no puede exceder {settings.MAX_MESSAGE_LENGTH} caracteres"
        )
    return text


def content_columns(payload) -> tuple:
    """
    Validate a send payload and map it to message columns.

    Raises:
        InvalidContentException: bad shape, empty or too long text, unsendable type
    """
    if isinstance(payload, dict):
        payload = parse_payload(payload)

    if isinstance(payload, TextContent):
        return MessageType.TEXT, {"text": validate_text(payload.text)}
    if isinstance(payload, (ImageContent, FileContent)):
        message_type = MessageType.IMAGE if isinstance(payload, ImageContent) else MessageType.FILE
        return message_type, {
            "text": validate_text(payload.text, required=False),
            "attachment": payload.attachment.to_wire(),
        }
    if isinstance(payload, LocationContent):
        return MessageType.LOCATION, {"location": payload.to_wire()}
    raise InvalidContentException(f"Tipo de mensaje no válido: {type(payload).__name__}")


def insert_message(
    db: Session,
    conversation: Conversation,
    sender_id: str,
    message_type: MessageType,
    now: datetime,
    *,
    text: Optional[str] = None,
    attachment: Optional[dict] = None,
    location: Optional[dict] = None,
    system_event: Optional[str] = None,
    system_data: Optional[dict] = None,
    reply_to_id: Optional[str] = None,
    proposal: Optional[ExchangeProposal] = None,
) -> Message:
    """
    Persist a message and its side effects in the caller's transaction.

    Creates one receipt per recipient, increments every other participant's
    unread counter, bumps totalMessages and moves lastMessage forward (never
    backwards).
    """
    message = Message(
        message_id=new_id(),
        conversation_id=conversation.conversation_id,
        sender_id=sender_id,
        type=message_type,
        created_at=now,
        updated_at=now,
        text=text,
        attachment=attachment,
        location=location,
        system_event=system_event,
        system_data=system_data,
        reply_to_id=reply_to_id,
    )
    message.receipts = [
        MessageReceipt(conversation_id=conversation.conversation_id, user_id=user_id)
        for user_id in conversation.participant_ids()
        if user_id != sender_id
    ]
    if proposal is not None:
        message.proposal = proposal
    db.add(message)
    db.flush()

    increment_unread(db, conversation.id, sender_id)
    db.execute(
        update(Conversation)
        .where(Conversation.id == conversation.id)
        .values(total_messages=Conversation.total_messages + 1)
        .execution_options(synchronize_session=False)
    )
    db.execute(
        update(Conversation)
        .where(Conversation.id == conversation.id, Conversation.last_message_at <= now)
        .values(last_message_id=message.message_id, last_message_at=now)
        .execution_options(synchronize_session=False)
    )
    return message


def expire_overdue_proposals(db: Session, now: datetime, conversation_id: Optional[str] = None) -> List[str]:
    """
    Mark pending proposals past their expiration date as expired.

    Returns:
        Message ids of the proposals that expired
    """
    query = select(ExchangeProposal.message_id).where(
        ExchangeProposal.status == ProposalStatus.PENDING,
        ExchangeProposal.expiration_date <= now,
    )
    if conversation_id is not None:
        query = query.where(ExchangeProposal.conversation_id == conversation_id)

    message_ids = list(db.scalars(query).all())
    if message_ids:
        db.execute(
            update(ExchangeProposal)
            .where(
                ExchangeProposal.message_id.in_(message_ids),
                ExchangeProposal.status == ProposalStatus.PENDING,
            )
            .values(status=ProposalStatus.EXPIRED)
            .execution_options(synchronize_session=False)
        )
        logger.info(f"Expired {len(message_ids)} overdue proposals")
    return message_ids


class MessageStore:
    """Durable message operations; each public method is one transaction."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or datetime.utcnow
        self._tracker = ReadTracker(clock=self._clock)

    def send(
        self,
        conversation_id: str,
        sender_id: str,
        payload: Union[dict, TextContent, ImageContent, FileContent, LocationContent],
        reply_to: Optional[str] = None,
    ) -> MessageView:
        """
        Send a user message.

        Args:
            conversation_id: Target conversation
            sender_id: Authenticated sender (must be a participant)
            payload: Raw dict or parsed content (text, image, file or location)
            reply_to: Optional id of a message in the same conversation

        Returns:
            The created message

        Raises:
            ConversationNotFoundException, NotParticipantException, InvalidContentException
        """
        with get_db() as db:
            conversation = require_participant(db, conversation_id, sender_id)
            message_type, columns = content_columns(payload)
            if reply_to:
                target = db.scalars(select(Message).where(Message.message_id == reply_to)).first()
                if target is None or target.conversation_id != conversation_id:
                    raise InvalidContentException("El mensaje al que respondes no pertenece a esta conversación")

            message = insert_message(
                db, conversation, sender_id, message_type, self._clock(),
                reply_to_id=reply_to, **columns
            )
            view = message_view(message)

        logger.info(f"Message {view.id} ({view.type}) sent by {sender_id} in {conversation_id}")
        return view

    def list(
        self,
        conversation_id: str,
        requester_id: str,
        page: int = 1,
        limit: Optional[int] = None,
        mark_read: Optional[bool] = None,
    ) -> MessagePage:
        """
        Page through history; page 1 holds the most recent messages.

        Overdue proposals are expired before reading. With mark_read (default
        MARK_READ_ON_FETCH) the whole conversation is marked read for the
        requester, which zeroes their unread counter.
        """
        limit = min(limit or settings.MESSAGES_PAGE_SIZE, settings.MAX_PAGE_SIZE)
        page = max(page, 1)
        if mark_read is None:
            mark_read = settings.MARK_READ_ON_FETCH
        now = self._clock()

        with get_db() as db:
            conversation = require_participant(db, conversation_id, requester_id)

            expired_ids = expire_overdue_proposals(db, now, conversation_id)
            changed = mark_conversation_read(db, conversation, requester_id, now) if mark_read else []
            db.expire_all()

            base = select(Message).where(Message.conversation_id == conversation_id)
            total = db.scalar(select(func.count()).select_from(base.subquery()))
            newest_first = db.scalars(
                base.order_by(Message.created_at.desc(), Message.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            ).all()
            items = [message_view(m) for m in reversed(newest_first)]

            updated = {v.id: v for v in (message_view(m) for m in load_messages(db, changed))}
            if expired_ids:
                for m in db.scalars(select(Message).where(Message.message_id.in_(expired_ids))).all():
                    updated[m.message_id] = message_view(m)

        return MessagePage(items=items, total=total or 0, page=page, limit=limit, updated=list(updated.values()))

    def edit(self, message_id: str, requester_id: str, new_text: str) -> MessageView:
        """
        Replace the text of a text message, keeping the prior text in history.

        Raises:
            MessageNotFoundException: missing or deleted
            NotAuthorException: requester is not the sender
            WrongTypeException: not a text message
            InvalidContentException: empty or too long
            EditWindowExpiredException: older than MESSAGE_EDIT_WINDOW_MINUTES
        """
        now = self._clock()
        with get_db() as db:
            message = load_message(db, message_id)
            if message.sender_id != requester_id:
                raise NotAuthorException(message_id, action="editar")
            if message.type != MessageType.TEXT:
                raise WrongTypeException(message_id, message.type.value)
            text = validate_text(new_text)

            window = settings.MESSAGE_EDIT_WINDOW_MINUTES
            if window > 0 and now - message.created_at > timedelta(minutes=window):
                raise EditWindowExpiredException(message_id, window)

            message.edits.append(MessageEdit(content=message.text, edited_at=now))
            message.text = text
            message.is_edited = True
            message.edited_at = now
            message.updated_at = now
            db.flush()
            view = message_view(message)

        logger.info(f"Message {message_id} edited by {requester_id}")
        return view

    def soft_delete(self, message_id: str, requester_id: str) -> MessageView:
        """
        Soft delete; the stored content stays but only the placeholder is served.

        Recipients that had not read the message get it taken off their counter.

        Raises:
            MessageNotFoundException: missing or already deleted
            NotAuthorException: requester is not the sender
        """
        now = self._clock()
        with get_db() as db:
            message = load_message(db, message_id)
            if message.sender_id != requester_id:
                raise NotAuthorException(message_id, action="eliminar")

            conversation = load_conversation(db, message.conversation_id)
            discount_unread(db, conversation.id, message)

            message.is_deleted = True
            message.deleted_at = now
            message.deleted_by = requester_id
            message.updated_at = now
            db.flush()
            view = message_view(message)

        logger.info(f"Message {message_id} deleted by {requester_id}")
        return view

    def mark_read(self, conversation_id: str, user_id: str) -> List[MessageView]:
        """Mark the conversation read for user_id; returns messages whose status changed."""
        return self._tracker.mark_read(conversation_id, user_id)

    @retry_read
    def stats_for_user(self, user_id: str) -> MessageStats:
        with get_db() as db:
            sent = db.scalar(
                select(func.count(Message.id)).where(Message.sender_id == user_id, Message.is_deleted.is_(False))
            ) or 0
            received = db.scalar(
                select(func.count(MessageReceipt.id))
                .join(Message, Message.id == MessageReceipt.message_db_id)
                .where(MessageReceipt.user_id == user_id, Message.is_deleted.is_(False))
            ) or 0
            conversations = db.scalar(
                select(func.count(ConversationParticipant.id)).where(
                    ConversationParticipant.user_id == user_id,
                    ConversationParticipant.deleted_at.is_(None),
                )
            ) or 0
            unread = db.scalar(
                select(func.coalesce(func.sum(ConversationParticipant.unread_count), 0)).where(
                    ConversationParticipant.user_id == user_id
                )
            ) or 0

        return MessageStats(
            total_messages=sent + received,
            sent_messages=sent,
            received_messages=received,
            total_conversations=conversations,
            unread_messages=unread,
        )
