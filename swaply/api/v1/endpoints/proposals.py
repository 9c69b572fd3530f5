"""
Exchange proposal endpoints.

WHAT: Create a proposal in a conversation and answer one
WHY: Negotiation happens inline in the message stream
HOW: FastAPI router over MessagingService / NegotiationEngine
"""

from fastapi import APIRouter, Depends, status

from ....models.api_schemas import ExchangeProposalRequest, ExchangeResponseRequest, envelope
from ....services.messaging_service import MessagingService
from ....utils.logger import get_logger
from ..deps import get_service, rate_limited_user

logger = get_logger(__name__)

router = APIRouter()

RESPONSE_MESSAGES = {
    "accept": "Propuesta de intercambio aceptada",
    "reject": "Propuesta de intercambio rechazada",
    "counter": "Contraoferta enviada",
}


@router.post("/conversations/{conversation_id}/exchange-proposal", status_code=status.HTTP_201_CREATED)
async def create_exchange_proposal(
    conversation_id: str,
    request: ExchangeProposalRequest,
    user_id: str = Depends(rate_limited_user),
    service: MessagingService = Depends(get_service),
):
    """
    Propose a trade.

    Items are publication ids or {publicationId, description} objects; both
    lists must be non-empty. expirationHours defaults to 48 (0 = expired).
    """
    view = await service.propose(
        conversation_id,
        user_id,
        request.offered_items,
        request.requested_items,
        request.terms,
        request.expiration_hours,
    )
    return envelope(view, "Propuesta de intercambio enviada")


@router.post("/messages/{message_id}/exchange-response")
async def respond_to_exchange_proposal(
    message_id: str,
    request: ExchangeResponseRequest,
    user_id: str = Depends(rate_limited_user),
    service: MessagingService = Depends(get_service),
):
    """
    Accept, reject or counter a pending proposal.

    Errors: 404 not a proposal, 410 expired, 409 already answered,
    403 own proposal / not a participant, 400 bad counter offer.
    """
    outcome = await service.respond_to_proposal(message_id, user_id, request.action, request.counter_offer)
    return envelope(
        {
            "action": outcome.action,
            "status": outcome.status,
            "proposal": outcome.proposal,
            "systemMessage": outcome.system_message,
            "counterProposal": outcome.counter_proposal,
        },
        RESPONSE_MESSAGES[outcome.action],
    )
