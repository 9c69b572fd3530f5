"""
Integration tests for error envelopes, health and the SSE fallback.

WHAT: 401/404/400/429 bodies, /health, and the gateway event stream
WHY: Clients branch on error.code and status; failures must keep one shape
HOW: TestClient for HTTP; the SSE generator is driven directly with a fake request
"""

import asyncio
import json

import pytest

from swaply.api.v1 import deps
from swaply.api.v1.endpoints.gateway import gateway_event_generator
from swaply.core.config import settings
from swaply.realtime import protocol
from swaply.realtime.connection_manager import QueueConnection
from swaply.realtime.protocol import GatewayEvent
from swaply.services.messaging_service import MessagingService
from swaply.services.rate_limiter import InMemoryRateLimiter

pytestmark = pytest.mark.integration


class TestErrorEnvelope:

    def test_missing_token(self, client):
        response = client.get("/api/v1/conversations")

        assert response.status_code == 401
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "UNAUTHORIZED"
        assert "timestamp" in body

    def test_unknown_token(self, client):
        response = client.get("/api/v1/conversations", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401
        assert response.json()["message"] == "Token inválido"

    def test_unknown_route_keeps_envelope(self, client):
        response = client.get("/api/v1/does-not-exist")
        assert response.status_code == 404
        assert response.json()["success"] is False
        assert response.json()["error"]["code"] == "HTTP_404"

    def test_validation_error_is_400(self, client, headers, users):
        response = client.get("/api/v1/conversations?page=0", headers=headers[users.a])

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["details"]["field_errors"][0]["field"] == "query.page"

    def test_rate_limited_with_retry_after(self, client, headers, users):
        deps.set_rate_limiter(InMemoryRateLimiter(max_requests=1, window_seconds=60))

        assert client.get("/api/v1/conversations", headers=headers[users.a]).status_code == 200
        response = client.get("/api/v1/conversations", headers=headers[users.a])

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "RATE_LIMITED"
        assert 1 <= int(response.headers["Retry-After"]) <= 60

        # Budgets are per user
        assert client.get("/api/v1/conversations", headers=headers[users.b]).status_code == 200


class TestHealth:

    def test_health_needs_no_token(self, client):
        response = client.get("/api/v1/health")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["database"]["available"] is True
        assert data["gateway"] == {"connections": 0}
        assert data["app"] == settings.APP_NAME

    def test_root(self, client):
        assert client.get("/").json()["status"] == "running"


class FakeRequest:
    """Only what the SSE generator asks of a request."""

    def __init__(self):
        self.disconnected = False

    async def is_disconnected(self) -> bool:
        return self.disconnected


class TestEventStream:

    def test_stream_requires_token(self, client):
        response = client.get("/api/v1/gateway/stream")
        assert response.status_code == 401

    def test_stream_rejects_unknown_token(self, client):
        response = client.get("/api/v1/gateway/stream?token=nope")
        assert response.status_code == 401
        assert response.json()["message"] == "Token inválido"

    @pytest.mark.asyncio
    async def test_generator_relays_events_and_heartbeats(self, users, monkeypatch):
        monkeypatch.setattr(settings, "SSE_HEARTBEAT_INTERVAL", 0.01)
        service = MessagingService()
        request = FakeRequest()
        connection = QueueConnection(users.a)
        stream = gateway_event_generator(request, connection, service)

        connected = await stream.__anext__()
        assert connected["event"] == "connected"
        assert json.loads(connected["data"])["userId"] == users.a
        assert service.manager.is_online(users.a)

        service.manager.join(connection, "conv-1")
        await service.manager.publish(GatewayEvent(
            type=protocol.MESSAGE_CREATED, conversation_id="conv-1", payload={"message": {"id": "m-1"}}
        ))

        snapshot = await stream.__anext__()
        created = await stream.__anext__()
        heartbeat = await asyncio.wait_for(stream.__anext__(), timeout=1)

        assert snapshot["event"] == protocol.PRESENCE_UPDATE
        assert created["event"] == protocol.MESSAGE_CREATED
        assert json.loads(created["data"])["payload"] == {"message": {"id": "m-1"}}
        assert heartbeat["event"] == "heartbeat"

        request.disconnected = True
        with pytest.raises(StopAsyncIteration):
            await stream.__anext__()
        assert not service.manager.is_online(users.a)
