"""
Negotiation Engine.

WHAT: Lifecycle of exchange proposals embedded in the message stream
WHY: A proposal is answered exactly once, and never after it expires
HOW: pending -> accepted | rejected | countered | expired, applied with a
     conditional UPDATE ... WHERE status = 'pending' so concurrent responses
     serialize at the storage layer and the loser gets AlreadyResolved

Counter offers do not mutate the original: it becomes "countered" and a new
pending proposal message (authored by the responder) references it.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.database import get_db
from ..core.models import (
    Conversation, ExchangeProposal, Message, MessageType, ProposalStatus,
)
from ..models.content import ProposalTerms, parse_terms
from ..models.views import MessageView
from ..utils.exceptions import (
    AlreadyResolvedException,
    ForbiddenException,
    InvalidContentException,
    ProposalExpiredException,
    ProposalNotFoundException,
)
from ..utils.logger import get_logger
from .access import load_conversation, require_participant
from .formatting import PROPOSAL_RESULT_TEXT, PROPOSAL_SENT_TEXT
from .message_store import expire_overdue_proposals, insert_message
from .serializers import message_view

logger = get_logger(__name__)

ACTIONS = {
    "accept": ProposalStatus.ACCEPTED,
    "reject": ProposalStatus.REJECTED,
    "counter": ProposalStatus.COUNTERED,
}


@dataclass
class ProposalOutcome:
    """Result of a successful response."""
    action: str
    status: str
    responded_by: str
    proposal: MessageView
    system_message: MessageView
    counter_proposal: Optional[MessageView] = None


def load_proposal_message(db: Session, message_id: str) -> Message:
    """
    Raises:
        ProposalNotFoundException: missing, deleted or not an exchange proposal
    """
    message = db.scalars(select(Message).where(Message.message_id == message_id)).first()
    if (
        message is None
        or message.is_deleted
        or message.type != MessageType.EXCHANGE_PROPOSAL
        or message.proposal is None
    ):
        raise ProposalNotFoundException(message_id)
    return message


class NegotiationEngine:
    """Create and answer exchange proposals."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or datetime.utcnow

    def propose(
        self,
        conversation_id: str,
        proposer_id: str,
        offered_items,
        requested_items,
        terms: str = "",
        expiration_hours: Optional[int] = None,
    ) -> MessageView:
        """
        Create a pending proposal message.

        Args:
            offered_items / requested_items: non-empty lists of publication ids
                or {publicationId, description} objects
            expiration_hours: hours until expiry (default PROPOSAL_DEFAULT_EXPIRATION_HOURS, 0 = already expired)

        Raises:
            ConversationNotFoundException, NotParticipantException, InvalidContentException
        """
        proposal_terms = parse_terms({
            "offeredItems": offered_items,
            "requestedItems": requested_items,
            "terms": terms or "",
            "expirationHours": expiration_hours,
        })

        with get_db() as db:
            conversation = require_participant(db, conversation_id, proposer_id)
            message = self._create_proposal(db, conversation, proposer_id, proposal_terms, self._clock())
            view = message_view(message)

        logger.info(f"Proposal {view.id} created by {proposer_id} in {conversation_id}")
        return view

    def respond(
        self,
        message_id: str,
        responder_id: str,
        action: str,
        counter_offer: Optional[dict] = None,
    ) -> ProposalOutcome:
        """
        Answer a proposal with accept, reject or counter.

        Check order: not found, expired (persisted before failing), already
        resolved, forbidden, then the conditional status update.

        Raises:
            ProposalNotFoundException, ProposalExpiredException, AlreadyResolvedException,
            ForbiddenException, InvalidContentException
        """
        if action not in ACTIONS:
            raise InvalidContentException(f"Acción no válida: {action}. Usa accept, reject o counter")

        now = self._clock()
        expired_at = self._expire_if_overdue(message_id, now)
        if expired_at is not None:
            logger.info(f"Response to expired proposal {message_id} by {responder_id} refused")
            raise ProposalExpiredException(message_id, expired_at.isoformat())

        new_status = ACTIONS[action]

        with get_db() as db:
            message = load_proposal_message(db, message_id)
            proposal = message.proposal

            if proposal.status != ProposalStatus.PENDING:
                raise AlreadyResolvedException(message_id, proposal.status.value)

            conversation = load_conversation(db, message.conversation_id)
            if conversation.participant(responder_id) is None:
                raise ForbiddenException(
                    "No eres participante de esta conversación",
                    details={"message_id": message_id}
                )
            if responder_id == proposal.proposed_by:
                raise ForbiddenException(
                    "No puedes responder a tu propia propuesta",
                    details={"message_id": message_id}
                )

            counter_terms = None
            if new_status == ProposalStatus.COUNTERED:
                if not counter_offer:
                    raise InvalidContentException("La contraoferta es requerida")
                counter_terms = parse_terms(counter_offer)

            result = db.execute(
                update(ExchangeProposal)
                .where(
                    ExchangeProposal.id == proposal.id,
                    ExchangeProposal.status == ProposalStatus.PENDING,
                )
                .values(status=new_status, responded_by=responder_id, responded_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                current = db.scalar(select(ExchangeProposal.status).where(ExchangeProposal.id == proposal.id))
                raise AlreadyResolvedException(message_id, current.value)

            counter_message = None
            if counter_terms is not None:
                counter_message = self._create_proposal(
                    db, conversation, responder_id, counter_terms, now, previous_proposal_id=message_id
                )
                db.execute(
                    update(ExchangeProposal)
                    .where(ExchangeProposal.id == proposal.id)
                    .values(counter_proposal_id=counter_message.message_id)
                    .execution_options(synchronize_session=False)
                )

            system_message = insert_message(
                db, conversation, responder_id, MessageType.SYSTEM, now,
                text=PROPOSAL_RESULT_TEXT[new_status.value],
                system_event=f"exchange_{new_status.value}",
                system_data={
                    "proposalId": message_id,
                    "action": action,
                    "respondedBy": responder_id,
                    "counterProposalId": counter_message.message_id if counter_message else None,
                },
                reply_to_id=message_id,
            )
            message.updated_at = now
            db.flush()
            db.expire_all()

            outcome = ProposalOutcome(
                action=action,
                status=new_status.value,
                responded_by=responder_id,
                proposal=message_view(message),
                system_message=message_view(system_message),
                counter_proposal=message_view(counter_message) if counter_message else None,
            )

        logger.info(f"Proposal {message_id} {new_status.value} by {responder_id}")
        return outcome

    def expire_overdue(self, conversation_id: Optional[str] = None) -> List[MessageView]:
        """Expire every overdue pending proposal (optionally in one conversation)."""
        with get_db() as db:
            message_ids = expire_overdue_proposals(db, self._clock(), conversation_id)
            if not message_ids:
                return []
            db.expire_all()
            messages = db.scalars(
                select(Message).where(Message.message_id.in_(message_ids)).order_by(Message.id)
            ).all()
            return [message_view(m) for m in messages]

    def _expire_if_overdue(self, message_id: str, now: datetime) -> Optional[datetime]:
        """
        Persist the expired status of an overdue pending proposal in its own transaction.

        Returns:
            The expiration date if the proposal is expired, else None
        """
        with get_db() as db:
            proposal = load_proposal_message(db, message_id).proposal
            if proposal.status == ProposalStatus.EXPIRED:
                return proposal.expiration_date
            if not proposal.is_overdue(now):
                return None
            db.execute(
                update(ExchangeProposal)
                .where(
                    ExchangeProposal.id == proposal.id,
                    ExchangeProposal.status == ProposalStatus.PENDING,
                )
                .values(status=ProposalStatus.EXPIRED)
                .execution_options(synchronize_session=False)
            )
            return proposal.expiration_date

    def _create_proposal(
        self,
        db: Session,
        conversation: Conversation,
        proposer_id: str,
        proposal_terms: ProposalTerms,
        now: datetime,
        previous_proposal_id: Optional[str] = None,
    ) -> Message:
        hours = proposal_terms.expiration_hours
        if hours is None:
            hours = settings.PROPOSAL_DEFAULT_EXPIRATION_HOURS

        proposal = ExchangeProposal(
            conversation_id=conversation.conversation_id,
            proposed_by=proposer_id,
            offered_items=[item.to_wire() for item in proposal_terms.offered_items],
            requested_items=[item.to_wire() for item in proposal_terms.requested_items],
            terms=proposal_terms.terms,
            status=ProposalStatus.PENDING,
            expiration_date=now + timedelta(hours=hours),
            previous_proposal_id=previous_proposal_id,
        )
        return insert_message(
            db, conversation, proposer_id, MessageType.EXCHANGE_PROPOSAL, now,
            text=PROPOSAL_SENT_TEXT,
            proposal=proposal,
        )
