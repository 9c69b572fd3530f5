"""
Conversation Store.

WHAT: Get-or-create, listing, per-participant status and lookups for conversations
WHY: Conversations are keyed by (participant-set, publication) and viewed per participant
HOW: One get_db() unit of work per operation; race-safe creation via unique conversation_key
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Set, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.database import get_db, retry_read
from ..core.models import Conversation, ConversationParticipant, Message, Publication, User
from ..models.views import ConversationView, MessageView
from ..utils.exceptions import (
    InvalidContentException,
    InvalidParticipantException,
    PublicationNotFoundException,
)
from ..utils.logger import get_logger
from .access import conversation_key, load_conversation, load_messages, require_participant
from .read_tracker import mark_delivered
from .serializers import conversation_view, message_view

logger = get_logger(__name__)

STATUS_ACTIONS = {
    "archive": ("is_archived", True),
    "unarchive": ("is_archived", False),
    "block": ("is_blocked", True),
    "unblock": ("is_blocked", False),
}


@dataclass
class ConversationPage:
    """A page of conversations plus messages whose status moved to delivered while listing."""
    items: List[ConversationView]
    total: int
    delivered: List[MessageView] = field(default_factory=list)


def build_view(db: Session, conversation: Conversation, viewer_id: str) -> ConversationView:
    """Serialize a conversation with its last message and publication title."""
    last_message = None
    if conversation.last_message_id:
        last_message = db.scalars(
            select(Message).where(Message.message_id == conversation.last_message_id)
        ).first()
    publication_title = None
    if conversation.publication_id:
        publication = db.get(Publication, conversation.publication_id)
        publication_title = publication.title if publication else None
    return conversation_view(conversation, viewer_id, last_message, publication_title)


class ConversationStore:
    """
    Durable conversation operations.

    Every public method is one transaction; views are built before commit.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or datetime.utcnow

    def get_or_create(
        self,
        requester_id: str,
        other_participant_id: str,
        publication_id: Optional[str] = None,
    ) -> Tuple[ConversationView, bool]:
        """
        Return the conversation for {requester, other} (+ publication), creating it if needed.

        Args:
            requester_id: Authenticated user
            other_participant_id: The other participant
            publication_id: Optional listing the conversation is about

        Returns:
            (view for the requester, created flag)

        Raises:
            InvalidParticipantException: other is the requester or does not exist
            PublicationNotFoundException: publication id given but unknown
        """
        if not other_participant_id or other_participant_id == requester_id:
            raise InvalidParticipantException(
                "No puedes crear una conversación contigo mismo", other_participant_id
            )

        key = conversation_key([requester_id, other_participant_id], publication_id)

        try:
            with get_db() as db:
                if db.get(User, other_participant_id) is None:
                    raise InvalidParticipantException("Usuario no encontrado", other_participant_id)
                if publication_id and db.get(Publication, publication_id) is None:
                    raise PublicationNotFoundException(publication_id)

                existing = db.scalars(
                    select(Conversation).where(Conversation.conversation_key == key)
                ).first()
                if existing is not None:
                    return build_view(db, existing, requester_id), False

                now = self._clock()
                conversation = Conversation(
                    conversation_key=key,
                    publication_id=publication_id,
                    created_by=requester_id,
                    created_at=now,
                    last_message_at=now,
                    total_messages=0,
                )
                conversation.participants = [
                    ConversationParticipant(user_id=user_id, joined_at=now, unread_count=0)
                    for user_id in (requester_id, other_participant_id)
                ]
                db.add(conversation)
                db.flush()
                logger.info(
                    f"Created conversation {conversation.conversation_id} "
                    f"between {requester_id} and {other_participant_id} (publication={publication_id})"
                )
                return build_view(db, conversation, requester_id), True
        except IntegrityError:
            # A concurrent request created the same key first
            with get_db() as db:
                existing = db.scalars(
                    select(Conversation).where(Conversation.conversation_key == key)
                ).first()
                if existing is None:
                    raise
                return build_view(db, existing, requester_id), False

    def list_for_user(
        self,
        user_id: str,
        page: int = 1,
        limit: Optional[int] = None,
        include_archived: bool = False,
    ) -> ConversationPage:
        """
        List the user's conversations, most recent activity first.

        Soft-deleted conversations are skipped; archived ones unless asked for.
        Messages in the returned page not yet delivered to the user are marked
        delivered.
        """
        limit = limit or settings.CONVERSATIONS_PAGE_SIZE
        page = max(page, 1)

        with get_db() as db:
            query = (
                select(Conversation)
                .join(ConversationParticipant, ConversationParticipant.conversation_db_id == Conversation.id)
                .where(
                    ConversationParticipant.user_id == user_id,
                    ConversationParticipant.deleted_at.is_(None),
                )
            )
            if not include_archived:
                query = query.where(ConversationParticipant.is_archived.is_(False))

            total = db.scalar(select(func.count()).select_from(query.subquery()))
            conversations = db.scalars(
                query.order_by(Conversation.last_message_at.desc(), Conversation.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            ).all()

            changed = []
            if conversations:
                changed = mark_delivered(
                    db, user_id, self._clock(),
                    conversation_ids=[c.conversation_id for c in conversations],
                )
                db.expire_all()

            items = [build_view(db, c, user_id) for c in conversations]
            delivered = [message_view(m) for m in load_messages(db, changed)]

        return ConversationPage(items=items, total=total or 0, delivered=delivered)

    @retry_read
    def get_for_user(self, conversation_id: str, user_id: str) -> ConversationView:
        """
        Raises:
            ConversationNotFoundException: no such conversation
            NotParticipantException: user is not a participant
        """
        with get_db() as db:
            conversation = require_participant(db, conversation_id, user_id)
            return build_view(db, conversation, user_id)

    def set_status(self, conversation_id: str, user_id: str, action: str) -> ConversationView:
        """
        Archive, unarchive, block or unblock for the acting participant only.

        Raises:
            InvalidContentException: unknown action
        """
        if action not in STATUS_ACTIONS:
            raise InvalidContentException(f"Acción no válida: {action}")
        column, value = STATUS_ACTIONS[action]

        with get_db() as db:
            conversation = require_participant(db, conversation_id, user_id)
            setattr(conversation.participant(user_id), column, value)
            db.flush()
            logger.info(f"User {user_id} applied '{action}' to conversation {conversation_id}")
            return build_view(db, conversation, user_id)

    def soft_delete_for_user(self, conversation_id: str, user_id: str) -> None:
        """Hide the conversation from user_id's list until a new message arrives."""
        with get_db() as db:
            conversation = require_participant(db, conversation_id, user_id)
            conversation.participant(user_id).deleted_at = self._clock()
        logger.info(f"User {user_id} deleted conversation {conversation_id} from their list")

    # ========== Gateway lookups ==========

    @retry_read
    def participant_ids(self, conversation_id: str) -> List[str]:
        with get_db() as db:
            return load_conversation(db, conversation_id).participant_ids()

    @retry_read
    def conversation_ids_for_user(self, user_id: str) -> List[str]:
        with get_db() as db:
            return list(db.scalars(
                select(Conversation.conversation_id)
                .join(ConversationParticipant, ConversationParticipant.conversation_db_id == Conversation.id)
                .where(ConversationParticipant.user_id == user_id)
            ).all())

    @retry_read
    def blocked_user_ids(self, conversation_id: str) -> Set[str]:
        """Participants who blocked the conversation (live delivery is suppressed for them)."""
        with get_db() as db:
            conversation = load_conversation(db, conversation_id)
            return {p.user_id for p in conversation.participants if p.is_blocked}

    # ========== Maintenance ==========

    def archive_inactive(self, days: Optional[int] = None) -> int:
        """
        Archive conversations with no activity for `days` for every participant.

        Returns:
            Number of participant rows archived
        """
        days = days if days is not None else settings.INACTIVE_ARCHIVE_DAYS
        cutoff = self._clock() - timedelta(days=days)

        with get_db() as db:
            stale = select(Conversation.id).where(Conversation.last_message_at < cutoff)
            result = db.execute(
                update(ConversationParticipant)
                .where(
                    ConversationParticipant.conversation_db_id.in_(stale),
                    ConversationParticipant.is_archived.is_(False),
                )
                .values(is_archived=True)
                .execution_options(synchronize_session=False)
            )
            archived = result.rowcount or 0

        if archived:
            logger.info(f"Archived {archived} inactive conversation memberships (older than {days} days)")
        return archived
