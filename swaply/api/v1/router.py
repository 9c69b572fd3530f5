"""
API v1 router aggregation.

WHAT: Combine all v1 endpoint routers
WHY: Single place to register all API routes
HOW: Include routers from endpoints with the /api/v1 prefix
"""

from fastapi import APIRouter

from .endpoints import conversations, gateway, messages, proposals, status

api_router = APIRouter()

api_router.include_router(
    status.router,
    prefix="/api/v1",
    tags=["status"]
)

api_router.include_router(
    conversations.router,
    prefix="/api/v1",
    tags=["conversations"]
)

api_router.include_router(
    messages.router,
    prefix="/api/v1",
    tags=["messages"]
)

api_router.include_router(
    proposals.router,
    prefix="/api/v1",
    tags=["exchange-proposals"]
)

api_router.include_router(
    gateway.router,
    prefix="/api/v1",
    tags=["gateway"]
)
