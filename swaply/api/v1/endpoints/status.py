"""
Status and health check endpoints.

WHAT: Health monitoring and gateway presence
WHY: Quick diagnostics for clients and ops
HOW: Database ping plus in-process connection registry counts
"""

from fastapi import APIRouter, Depends

from ....core.config import settings
from ....core.database import ping_database
from ....models.api_schemas import envelope
from ....services.messaging_service import MessagingService
from ..deps import get_service, rate_limited_user

router = APIRouter()


@router.get("/health")
async def health(service: MessagingService = Depends(get_service)):
    """
    Service health.

    Returns:
        Database status and live gateway connection count
    """
    database = ping_database()
    return envelope(
        {
            "app": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "database": database,
            "gateway": {"connections": service.manager.connection_count()},
        },
        "OK" if database["available"] else "Base de datos no disponible",
    )


@router.get("/presence/online")
async def online_users(
    user_id: str = Depends(rate_limited_user),
    service: MessagingService = Depends(get_service),
):
    """Users with at least one live gateway connection on this instance."""
    return envelope(service.online_users(), "Usuarios en línea")
