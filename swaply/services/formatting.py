"""
Display formatting for message content.

WHAT: One-line human-readable rendering of any content variant
WHY: List previews and notifications need text for non-text messages too
HOW: Exhaustive isinstance match over the content union
"""

from ..models.content import (
    TextContent, ImageContent, FileContent, LocationContent,
    ProposalContent, ExchangeResponseContent, SystemContent,
)

DELETED_PLACEHOLDER = "Este mensaje ha sido eliminado"

PROPOSAL_SENT_TEXT = "Propuesta de intercambio enviada"
PROPOSAL_RESULT_TEXT = {
    "accepted": "Propuesta de intercambio aceptada",
    "rejected": "Propuesta de intercambio rechazada",
    "countered": "Contraoferta enviada",
}


def display_text(content) -> str:
    """
    Render a content variant as display text.

    Args:
        content: Any member of the message content union

    Returns:
        Preview string (never empty)

    Raises:
        TypeError: content is not a known variant
    """
    if isinstance(content, TextContent):
        return content.text
    if isinstance(content, ImageContent):
        return content.text or "Imagen compartida"
    if isinstance(content, FileContent):
        return f"Archivo: {content.attachment.filename}"
    if isinstance(content, LocationContent):
        return f"Ubicación: {content.name or content.address}"
    if isinstance(content, ProposalContent):
        return "Propuesta de intercambio"
    if isinstance(content, ExchangeResponseContent):
        return content.text or "Respuesta a propuesta de intercambio"
    if isinstance(content, SystemContent):
        return content.text
    raise TypeError(f"Unknown message content: {type(content).__name__}")
