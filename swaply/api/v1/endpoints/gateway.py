"""
Delivery Gateway transport endpoints.

WHAT: WebSocket gateway plus a receive-only SSE fallback
WHY: Participants get committed mutations and ephemeral signals live
HOW: Authenticate, register the connection with MessagingService, then pump
     client events (WebSocket) or drain a per-connection queue (SSE)
"""

import asyncio
import json
from datetime import datetime
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, Query, Request, WebSocket, WebSocketDisconnect
from sse_starlette.sse import EventSourceResponse
from starlette.concurrency import run_in_threadpool

from ....core.config import settings
from ....realtime.connection_manager import QueueConnection, WebSocketConnection
from ....realtime.protocol import CLOSE_UNAUTHORIZED, error_event
from ....services.identity import IdentityProvider, bearer_token
from ....services.messaging_service import MessagingService
from ....utils.exceptions import AuthenticationException
from ....utils.logger import get_logger
from ..deps import get_identity_provider, get_service

logger = get_logger(__name__)

router = APIRouter()


async def resolve_user(
    identity: IdentityProvider,
    token: Optional[str],
    authorization: Optional[str],
) -> Optional[str]:
    """Browser sockets cannot set headers, so ?token= is accepted too."""
    credential = token or bearer_token(authorization)
    if not credential:
        return None
    return await run_in_threadpool(identity.resolve, credential)


@router.websocket("/ws")
async def websocket_gateway(
    websocket: WebSocket,
    token: Optional[str] = Query(None),
    identity: IdentityProvider = Depends(get_identity_provider),
    service: MessagingService = Depends(get_service),
):
    """
    Bidirectional gateway.

    Unauthenticated sockets are accepted and immediately closed with 4401 so
    the client can tell a bad credential from a network failure.
    """
    await websocket.accept()
    user_id = await resolve_user(identity, token, websocket.headers.get("authorization"))
    if user_id is None:
        logger.warning("Rejected gateway connection without a valid token")
        await websocket.close(code=CLOSE_UNAUTHORIZED)
        return

    connection = WebSocketConnection(user_id, websocket)
    await service.open_connection(connection)
    try:
        while True:
            try:
                data = await websocket.receive_json()
            except (json.JSONDecodeError, UnicodeDecodeError, KeyError):
                # KeyError: binary frame, receive_json only reads text frames
                await service.manager.send_to_connection(
                    connection, error_event("INVALID_EVENT", "El evento debe ser JSON")
                )
                continue
            await service.handle_client_event(connection, data)
    except WebSocketDisconnect as e:
        logger.info(f"Gateway socket closed for {user_id} (code={e.code})")
    finally:
        await service.close_connection(connection)


async def gateway_event_generator(
    request: Request,
    connection: QueueConnection,
    service: MessagingService,
) -> AsyncIterator[dict]:
    """
    Drain a queue connection as SSE events.

    Yields one SSE event per gateway event (event name = gateway type) and a
    heartbeat whenever nothing arrived for SSE_HEARTBEAT_INTERVAL seconds.
    """
    await service.open_connection(connection)
    try:
        yield {
            "event": "connected",
            "data": json.dumps({
                "type": "connected",
                "userId": connection.user_id,
                "timestamp": datetime.utcnow().isoformat(),
            }),
        }
        while True:
            if await request.is_disconnected():
                break
            try:
                wire = await asyncio.wait_for(connection.queue.get(), timeout=settings.SSE_HEARTBEAT_INTERVAL)
            except asyncio.TimeoutError:
                yield {
                    "event": "heartbeat",
                    "data": json.dumps({"type": "heartbeat", "timestamp": datetime.utcnow().isoformat()}),
                }
                continue
            yield {"event": wire["type"], "data": json.dumps(wire)}
    finally:
        await service.close_connection(connection)
        logger.info(f"SSE gateway stream ended for {connection.user_id}")


@router.get("/gateway/stream")
async def gateway_stream(
    request: Request,
    token: Optional[str] = Query(None),
    identity: IdentityProvider = Depends(get_identity_provider),
    service: MessagingService = Depends(get_service),
):
    """
    Receive-only gateway over Server-Sent Events.

    Raises:
        AuthenticationException: missing or unknown token (401)
    """
    user_id = await resolve_user(identity, token, request.headers.get("authorization"))
    if user_id is None:
        raise AuthenticationException("Token inválido") if token else AuthenticationException()

    connection = QueueConnection(user_id)
    return EventSourceResponse(gateway_event_generator(request, connection, service))
