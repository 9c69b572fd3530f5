"""
REST client for the messaging API.

WHAT: Async httpx client for conversations, messages and exchange proposals
WHY: Apps and the gateway client's reconnect hook need the authoritative history
HOW: httpx.AsyncClient with bearer auth; reads retry transient transport
     failures with exponential backoff, writes are sent once (a retried send
     could duplicate a message)
"""

import asyncio
from typing import Any, Dict, List, Optional

import httpx

from ..core.config import settings
from ..utils.exceptions import BusinessException, TransportException
from ..utils.logger import get_logger

logger = get_logger(__name__)


class ApiError(BusinessException):
    """Error envelope returned by the API ({success: false, message, error})."""

    def __init__(self, status_code: int, message: str, code: str, details: Optional[Any] = None):
        super().__init__(message=message, code=code, details=details)
        self.status_code = status_code


class SwaplyApiClient:
    """
    Thin async wrapper over /api/v1.

    Every method returns the envelope's `data` (paged calls return the whole
    body so callers also get `pagination`).
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries if max_retries is not None else settings.STORAGE_READ_RETRIES
        self.retry_delay = retry_delay if retry_delay is not None else settings.STORAGE_RETRY_DELAY
        self.client = httpx.AsyncClient(
            base_url=f"{self.base_url}/api/v1",
            timeout=httpx.Timeout(5.0, read=30.0),
            headers={"Authorization": f"Bearer {token}"},
            transport=transport,
        )

    async def aclose(self):
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    # ========== Transport ==========

    async def _request(self, method: str, path: str, retry: bool = False, **kwargs) -> dict:
        attempts = self.max_retries if retry else 1
        for attempt in range(attempts):
            try:
                response = await self.client.request(method, path, **kwargs)
                break
            except (httpx.TimeoutException, httpx.ConnectError) as e:
                logger.warning(f"{method} {path} failed (attempt {attempt + 1}/{attempts}): {e}")
                if attempt == attempts - 1:
                    raise TransportException(f"API no disponible: {e}", attempts=attempt + 1) from e
                await asyncio.sleep(self.retry_delay * (2 ** attempt))

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.is_error:
            error = body.get("error") or {}
            raise ApiError(
                response.status_code,
                body.get("message") or response.reason_phrase,
                error.get("code") or f"HTTP_{response.status_code}",
                error.get("details"),
            )
        return body

    async def _get(self, path: str, **kwargs) -> dict:
        return await self._request("GET", path, retry=True, **kwargs)

    # ========== Conversations ==========

    async def list_conversations(self, page: int = 1, limit: int = 20, include_archived: bool = False) -> dict:
        params = {"page": page, "limit": limit, "includeArchived": str(include_archived).lower()}
        return await self._get("/conversations", params=params)

    async def get_conversation(self, conversation_id: str) -> dict:
        return (await self._get(f"/conversations/{conversation_id}"))["data"]

    async def create_conversation(self, participant_id: str, publication_id: Optional[str] = None) -> dict:
        body = {"participantId": participant_id, "publicationId": publication_id}
        return (await self._request("POST", "/conversations", json=body))["data"]

    async def set_conversation_status(self, conversation_id: str, action: str) -> dict:
        return (await self._request("PUT", f"/conversations/{conversation_id}/{action}"))["data"]

    async def delete_conversation(self, conversation_id: str):
        await self._request("DELETE", f"/conversations/{conversation_id}")

    # ========== Messages ==========

    async def list_messages(
        self, conversation_id: str, page: int = 1, limit: int = 50, mark_read: Optional[bool] = None
    ) -> dict:
        params: Dict[str, Any] = {"page": page, "limit": limit}
        if mark_read is not None:
            params["markRead"] = str(mark_read).lower()
        return await self._get(f"/conversations/{conversation_id}/messages", params=params)

    async def send_text(self, conversation_id: str, text: str, reply_to: Optional[str] = None) -> dict:
        body = {"type": "text", "content": text, "replyTo": reply_to}
        return (await self._request("POST", f"/conversations/{conversation_id}/messages", json=body))["data"]

    async def send_location(self, conversation_id: str, address: str, coordinates: List[float], name: str = "") -> dict:
        body = {"type": "location", "content": {"address": address, "coordinates": coordinates, "name": name}}
        return (await self._request("POST", f"/conversations/{conversation_id}/messages", json=body))["data"]

    async def send_attachment(
        self, conversation_id: str, filename: str, data: bytes, mime_type: str, text: Optional[str] = None
    ) -> dict:
        form = {"content": text} if text else {}
        files = {"attachments": (filename, data, mime_type)}
        path = f"/conversations/{conversation_id}/messages"
        return (await self._request("POST", path, data=form, files=files))["data"]

    async def mark_read(self, conversation_id: str) -> int:
        return (await self._request("POST", f"/conversations/{conversation_id}/read"))["data"]["updated"]

    async def edit_message(self, message_id: str, text: str) -> dict:
        return (await self._request("PUT", f"/messages/{message_id}", json={"content": text}))["data"]

    async def delete_message(self, message_id: str) -> dict:
        return (await self._request("DELETE", f"/messages/{message_id}"))["data"]

    async def message_stats(self) -> dict:
        return (await self._get("/messages/stats"))["data"]

    # ========== Exchange proposals ==========

    async def propose_exchange(
        self,
        conversation_id: str,
        offered_items: List[Any],
        requested_items: List[Any],
        terms: str = "",
        expiration_hours: Optional[int] = None,
    ) -> dict:
        body: Dict[str, Any] = {"offeredItems": offered_items, "requestedItems": requested_items, "terms": terms}
        if expiration_hours is not None:
            body["expirationHours"] = expiration_hours
        path = f"/conversations/{conversation_id}/exchange-proposal"
        return (await self._request("POST", path, json=body))["data"]

    async def respond_to_proposal(self, message_id: str, action: str, counter_offer: Optional[dict] = None) -> dict:
        body: Dict[str, Any] = {"action": action}
        if counter_offer is not None:
            body["counterOffer"] = counter_offer
        return (await self._request("POST", f"/messages/{message_id}/exchange-response", json=body))["data"]
