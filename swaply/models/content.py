"""
Message content models.

WHAT: Tagged union of message payloads keyed by "type"
WHY: Each message type carries a different shape; formatting must be exhaustive
HOW: Pydantic v2 discriminated union; invalid shapes become InvalidContentException
"""

from datetime import datetime
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from ..utils.exceptions import InvalidContentException


class ApiModel(BaseModel):
    """Base model: camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class AttachmentDescriptor(ApiModel):
    """Stored attachment metadata."""
    url: str = Field(..., min_length=1)
    filename: str = Field(..., min_length=1, max_length=255)
    size: int = Field(..., ge=0)
    mime_type: str = Field(..., min_length=1)


class ProposalItem(ApiModel):
    """One side of a trade: a listing reference and/or a free-text description."""
    publication_id: Optional[str] = None
    description: str = ""

    @model_validator(mode="before")
    @classmethod
    def accept_bare_id(cls, data):
        """Allow ["pub-1", ...] as shorthand for [{"publicationId": "pub-1"}, ...]."""
        if isinstance(data, str):
            return {"publicationId": data}
        return data

    @model_validator(mode="after")
    def require_reference_or_description(self):
        if not self.publication_id and not self.description.strip():
            raise ValueError("item needs a publicationId or a description")
        return self


# ========== Content variants ==========

class TextContent(ApiModel):
    type: Literal["text"] = "text"
    text: str


class ImageContent(ApiModel):
    type: Literal["image"] = "image"
    attachment: AttachmentDescriptor
    text: Optional[str] = None


class FileContent(ApiModel):
    type: Literal["file"] = "file"
    attachment: AttachmentDescriptor
    text: Optional[str] = None


class LocationContent(ApiModel):
    type: Literal["location"] = "location"
    address: str = Field(..., min_length=1, max_length=300)
    coordinates: List[float] = Field(..., min_length=2, max_length=2, description="[longitude, latitude]")
    name: Optional[str] = None

    @field_validator("coordinates")
    @classmethod
    def validate_coordinates(cls, v: List[float]) -> List[float]:
        lng, lat = v
        if not -180 <= lng <= 180 or not -90 <= lat <= 90:
            raise ValueError("coordinates must be [longitude, latitude] within range")
        return v


class ProposalContent(ApiModel):
    type: Literal["exchange_proposal"] = "exchange_proposal"
    text: str = ""
    offered_items: List[ProposalItem]
    requested_items: List[ProposalItem]
    terms: str = ""
    status: str
    proposed_by: str
    expiration_date: datetime
    responded_by: Optional[str] = None
    responded_at: Optional[datetime] = None
    previous_proposal_id: Optional[str] = None
    counter_proposal_id: Optional[str] = None


class ExchangeResponseContent(ApiModel):
    type: Literal["exchange_response"] = "exchange_response"
    text: str = ""
    proposal_id: Optional[str] = None


class SystemContent(ApiModel):
    type: Literal["system"] = "system"
    text: str
    event: Optional[str] = None
    data: Optional[dict[str, Any]] = None


MessageContent = Annotated[
    Union[
        TextContent, ImageContent, FileContent, LocationContent,
        ProposalContent, ExchangeResponseContent, SystemContent,
    ],
    Field(discriminator="type"),
]

# Types a user may send through the plain send operation
SendablePayload = Annotated[
    Union[TextContent, ImageContent, FileContent, LocationContent],
    Field(discriminator="type"),
]

_payload_adapter = TypeAdapter(SendablePayload)


def _field_errors(error: ValidationError) -> List[dict]:
    return [
        {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
        for err in error.errors()
    ]


SENDABLE_TYPES = ("text", "image", "file", "location")


def parse_payload(raw: dict) -> Union[TextContent, ImageContent, FileContent, LocationContent]:
    """
    Validate a raw send payload against its declared type.

    Raises:
        InvalidContentException: unknown/unsendable type or shape mismatch
    """
    message_type = raw.get("type", "text")
    if message_type not in SENDABLE_TYPES:
        raise InvalidContentException(f"Tipo de mensaje no válido: {message_type}")
    try:
        return _payload_adapter.validate_python(raw)
    except ValidationError as e:
        raise InvalidContentException("Contenido del mensaje no válido", field_errors=_field_errors(e))


class ProposalTerms(ApiModel):
    """What a proposal (or counter offer) puts on the table."""
    offered_items: List[ProposalItem] = Field(..., min_length=1)
    requested_items: List[ProposalItem] = Field(..., min_length=1)
    terms: str = Field("", max_length=1000)
    expiration_hours: Optional[int] = Field(None, ge=0)


def parse_terms(raw) -> ProposalTerms:
    """
    Validate proposal terms.

    Raises:
        InvalidContentException: missing/empty item lists or negative expiration
    """
    if isinstance(raw, ProposalTerms):
        return raw
    if not isinstance(raw, dict):
        raise InvalidContentException("La propuesta debe incluir artículos ofrecidos y solicitados")
    try:
        return ProposalTerms.model_validate(raw)
    except ValidationError as e:
        raise InvalidContentException(
            "La propuesta debe incluir artículos ofrecidos y solicitados", field_errors=_field_errors(e)
        )
