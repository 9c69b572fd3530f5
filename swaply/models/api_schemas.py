"""
API request/response schemas.

WHAT: Pydantic models for REST bodies and the response envelope
WHY: camelCase JSON on the wire, validated input, one response shape
HOW: ApiModel base (camelCase aliases); envelope helpers build {success, message, data}
"""

import math
from typing import Any, List, Optional

from pydantic import Field

from .content import ApiModel


# ========== Requests ==========

class CreateConversationRequest(ApiModel):
    """POST /conversations"""
    participant_id: str = Field(..., min_length=1)
    publication_id: Optional[str] = None


class EditMessageRequest(ApiModel):
    """PUT /messages/{id}"""
    content: str


class ExchangeProposalRequest(ApiModel):
    """
    POST /conversations/{id}/exchange-proposal

    Item lists are checked by the negotiation engine so that empty or
    malformed items surface as INVALID_CONTENT.
    """
    offered_items: List[Any] = []
    requested_items: List[Any] = []
    terms: str = ""
    expiration_hours: Optional[int] = None


class ExchangeResponseRequest(ApiModel):
    """POST /messages/{id}/exchange-response"""
    action: str
    counter_offer: Optional[dict] = None


# ========== Responses ==========

class Pagination(ApiModel):
    page: int
    limit: int
    total: int
    pages: int


def _dump(data):
    if isinstance(data, ApiModel):
        return data.to_wire()
    if isinstance(data, list):
        return [_dump(item) for item in data]
    if isinstance(data, dict):
        return {k: _dump(v) for k, v in data.items()}
    return data


def envelope(data: Any = None, message: str = "") -> dict:
    """Build a {success, message, data} response body."""
    body = {"success": True, "message": message}
    if data is not None:
        body["data"] = _dump(data)
    return body


def paginated(items: list, page: int, limit: int, total: int, message: str = "") -> dict:
    """Envelope plus {page, limit, total, pages}."""
    body = envelope(items, message)
    body["pagination"] = Pagination(
        page=page, limit=limit, total=total, pages=math.ceil(total / limit) if limit else 0
    ).to_wire()
    return body
