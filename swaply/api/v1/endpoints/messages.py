"""
Message endpoints.

WHAT: Edit, soft delete and per-user message stats
WHY: Only the sender may change a message; everyone sees the result live
HOW: FastAPI router over MessagingService
"""

from fastapi import APIRouter, Depends

from ....models.api_schemas import EditMessageRequest, envelope
from ....services.messaging_service import MessagingService
from ..deps import get_service, rate_limited_user

router = APIRouter()


@router.get("/messages/stats")
async def message_stats(
    user_id: str = Depends(rate_limited_user),
    service: MessagingService = Depends(get_service),
):
    """Sent/received/unread totals for the caller."""
    stats = await service.message_stats(user_id)
    return envelope(stats, "Estadísticas obtenidas")


@router.put("/messages/{message_id}")
async def edit_message(
    message_id: str,
    request: EditMessageRequest,
    user_id: str = Depends(rate_limited_user),
    service: MessagingService = Depends(get_service),
):
    view = await service.edit_message(message_id, user_id, request.content)
    return envelope(view, "Mensaje editado")


@router.delete("/messages/{message_id}")
async def delete_message(
    message_id: str,
    user_id: str = Depends(rate_limited_user),
    service: MessagingService = Depends(get_service),
):
    """Soft delete: the message stays in history with placeholder content."""
    view = await service.delete_message(message_id, user_id)
    return envelope(view, "Mensaje eliminado")
