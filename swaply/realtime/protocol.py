"""
Delivery Gateway wire protocol.

WHAT: Event names and the {type, conversationId, payload, timestamp} envelope
WHY: Server, SSE fallback and the client kit must agree on one contract
HOW: GatewayEvent dataclass with to_wire / from_wire
"""

import datetime
import decimal
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

# Server -> client
MESSAGE_CREATED = "message.created"
MESSAGE_UPDATED = "message.updated"
PROPOSAL_RESPONDED = "proposal.responded"
TYPING_START = "typing.start"
TYPING_STOP = "typing.stop"
PRESENCE_UPDATE = "presence.update"
CONVERSATION_UPDATED = "conversation.updated"
ERROR = "error"

# Client -> server
CONVERSATION_JOIN = "conversation.join"
CONVERSATION_LEAVE = "conversation.leave"
READ_ACK = "read.ack"

CLIENT_EVENTS = frozenset({
    CONVERSATION_JOIN, CONVERSATION_LEAVE, TYPING_START, TYPING_STOP, READ_ACK, PRESENCE_UPDATE,
})

# Close code for sockets without a valid credential
CLOSE_UNAUTHORIZED = 4401


def room_name(conversation_id: str) -> str:
    return f"conversation_{conversation_id}"


def serialize_data(data):
    """Make nested payloads JSON-safe (datetimes to ISO strings, decimals to str)."""
    if isinstance(data, dict):
        return {k: serialize_data(v) for k, v in data.items()}
    elif isinstance(data, (list, tuple, set, frozenset)):
        return [serialize_data(v) for v in data]
    elif isinstance(data, decimal.Decimal):
        return str(data)
    elif isinstance(data, datetime.datetime):
        return data.isoformat()
    else:
        return data


@dataclass
class GatewayEvent:
    """One gateway event."""
    type: str
    conversation_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime.datetime = field(default_factory=datetime.datetime.utcnow)

    def to_wire(self) -> dict:
        return {
            "type": self.type,
            "conversationId": self.conversation_id,
            "payload": serialize_data(self.payload),
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_wire(cls, data: dict) -> "GatewayEvent":
        """
        Parse a received envelope.

        Raises:
            ValueError: not an object or no "type"
        """
        if not isinstance(data, dict) or not isinstance(data.get("type"), str):
            raise ValueError("event must be an object with a string 'type'")
        payload = data.get("payload") or {}
        if not isinstance(payload, dict):
            raise ValueError("'payload' must be an object")
        timestamp = data.get("timestamp")
        try:
            parsed = datetime.datetime.fromisoformat(timestamp) if timestamp else datetime.datetime.utcnow()
        except (TypeError, ValueError):
            parsed = datetime.datetime.utcnow()
        return cls(
            type=data["type"],
            conversation_id=data.get("conversationId"),
            payload=payload,
            timestamp=parsed,
        )


def error_event(code: str, message: str, conversation_id: Optional[str] = None, details=None) -> GatewayEvent:
    """Event sent back to a client whose event was rejected."""
    return GatewayEvent(
        type=ERROR,
        conversation_id=conversation_id,
        payload={"code": code, "message": message, "details": details},
    )
