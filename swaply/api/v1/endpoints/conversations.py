"""
Conversation endpoints.

WHAT: Conversation lifecycle, history paging, sending and read-marking
WHY: REST is the durable, authoritative path; the gateway only mirrors it
HOW: FastAPI router over MessagingService; bodies in the {success, message, data} envelope
"""

import json
from typing import List, Optional, Tuple

from fastapi import APIRouter, Depends, Query, Request, status
from starlette.datastructures import UploadFile

from ....core.config import settings
from ....models.api_schemas import CreateConversationRequest, envelope, paginated
from ....models.content import AttachmentDescriptor
from ....services.attachments import AttachmentStorage, LocalAttachmentStorage, is_image
from ....services.message_store import validate_text
from ....services.messaging_service import MessagingService
from ....utils.exceptions import InvalidContentException
from ....utils.logger import get_logger
from ..deps import get_service, rate_limited_user

logger = get_logger(__name__)

router = APIRouter()

_storage: AttachmentStorage = LocalAttachmentStorage()


def get_attachment_storage() -> AttachmentStorage:
    return _storage


@router.get("/conversations")
async def list_conversations(
    page: int = Query(1, ge=1),
    limit: int = Query(settings.CONVERSATIONS_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    include_archived: bool = Query(False, alias="includeArchived"),
    user_id: str = Depends(rate_limited_user),
    service: MessagingService = Depends(get_service),
):
    """
    List the caller's conversations, most recent activity first.

    Side effect: messages in the returned conversations are marked delivered.
    """
    result = await service.list_conversations(user_id, page, limit, include_archived)
    return paginated(result.items, page, limit, result.total, "Conversaciones obtenidas")


@router.post("/conversations", status_code=status.HTTP_201_CREATED)
async def create_conversation(
    request: CreateConversationRequest,
    user_id: str = Depends(rate_limited_user),
    service: MessagingService = Depends(get_service),
):
    """
    Get-or-create the conversation with another user (optionally about a publication).

    Answers 201 whether the conversation was created or already existed.
    """
    view, created = await service.get_or_create_conversation(
        user_id, request.participant_id, request.publication_id
    )
    message = "Conversación creada" if created else "Conversación existente"
    return envelope(view, message)


@router.get("/conversations/{conversation_id}")
async def get_conversation(
    conversation_id: str,
    user_id: str = Depends(rate_limited_user),
    service: MessagingService = Depends(get_service),
):
    view = await service.get_conversation(conversation_id, user_id)
    return envelope(view, "Conversación obtenida")


@router.delete("/conversations/{conversation_id}")
async def delete_conversation(
    conversation_id: str,
    user_id: str = Depends(rate_limited_user),
    service: MessagingService = Depends(get_service),
):
    """Hide the conversation for the caller only."""
    await service.delete_conversation(conversation_id, user_id)
    return envelope(message="Conversación eliminada")


@router.put("/conversations/{conversation_id}/{action}")
async def set_conversation_status(
    conversation_id: str,
    action: str,
    user_id: str = Depends(rate_limited_user),
    service: MessagingService = Depends(get_service),
):
    """archive | unarchive | block | unblock, scoped to the caller."""
    view = await service.set_conversation_status(conversation_id, user_id, action)
    messages = {
        "archive": "Conversación archivada",
        "unarchive": "Conversación desarchivada",
        "block": "Conversación bloqueada",
        "unblock": "Conversación desbloqueada",
    }
    return envelope(view, messages.get(action, "Conversación actualizada"))


# ========== Messages in a conversation ==========

@router.get("/conversations/{conversation_id}/messages")
async def list_messages(
    conversation_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(settings.MESSAGES_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    mark_read: Optional[bool] = Query(None, alias="markRead"),
    user_id: str = Depends(rate_limited_user),
    service: MessagingService = Depends(get_service),
):
    """
    Page through history (page 1 = most recent, oldest first within the page).

    Marks the conversation read for the caller unless markRead=false.
    """
    result = await service.list_messages(conversation_id, user_id, page, limit, mark_read)
    return paginated(result.items, result.page, result.limit, result.total, "Mensajes obtenidos")


@router.post("/conversations/{conversation_id}/messages", status_code=status.HTTP_201_CREATED)
async def send_message(
    conversation_id: str,
    request: Request,
    user_id: str = Depends(rate_limited_user),
    service: MessagingService = Depends(get_service),
    storage: AttachmentStorage = Depends(get_attachment_storage),
):
    """
    Send a message.

    Accepts multipart/form-data (content, type, replyTo, attachments[]) or a
    JSON body with the same fields. Location content is an object (or its
    JSON text) with address, coordinates and name.
    """
    content_type = request.headers.get("content-type", "")
    uploads: List[UploadFile] = []
    if content_type.startswith(("multipart/form-data", "application/x-www-form-urlencoded")):
        form = await request.form()
        fields = {key: form.get(key) for key in ("content", "type", "replyTo")}
        uploads = [
            item for key in ("attachments", "attachments[]")
            for item in form.getlist(key)
            if isinstance(item, UploadFile)
        ]
    else:
        try:
            fields = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise InvalidContentException("Cuerpo de la solicitud no válido")
        if not isinstance(fields, dict):
            raise InvalidContentException("Cuerpo de la solicitud no válido")

    # Nothing touches the upload directory until the sender is known to belong here
    await service.require_participant(conversation_id, user_id)
    payload, stored = await build_payload(fields, uploads, storage)
    try:
        view = await service.send_message(conversation_id, user_id, payload, fields.get("replyTo") or None)
    except Exception:
        if stored is not None:
            await storage.delete(stored)
        raise
    return envelope(view, "Mensaje enviado")


async def build_payload(
    fields: dict, uploads: List[UploadFile], storage: AttachmentStorage
) -> Tuple[dict, Optional[AttachmentDescriptor]]:
    """
    Turn request fields (+ uploads) into a raw content payload.

    Returns:
        (payload, descriptor of the stored upload or None)

    Raises:
        InvalidContentException: attachment missing/extra or location not parseable
    """
    if len(uploads) > 1:
        raise InvalidContentException("Solo se permite un archivo por mensaje")

    content = fields.get("content")
    message_type = fields.get("type") or None

    if uploads:
        if message_type not in (None, "text", "image", "file"):
            raise InvalidContentException("Los archivos adjuntos requieren tipo image o file")
        caption = validate_text(content if isinstance(content, str) else None, required=False)
        descriptor = await storage.save(uploads[0])
        if message_type in (None, "text"):
            message_type = "image" if is_image(descriptor) else "file"
        return {"type": message_type, "attachment": descriptor.to_wire(), "text": caption}, descriptor

    message_type = message_type or "text"
    if message_type in ("image", "file"):
        if isinstance(content, dict) and "attachment" in content:
            return {"type": message_type, **content}, None
        raise InvalidContentException("Se requiere un archivo adjunto")
    if message_type == "location":
        location = content
        if isinstance(content, str):
            try:
                location = json.loads(content)
            except json.JSONDecodeError:
                raise InvalidContentException("Ubicación no válida")
        if not isinstance(location, dict):
            raise InvalidContentException("Ubicación no válida")
        return {"type": "location", **location}, None
    return {"type": message_type, "text": content if isinstance(content, str) else ""}, None


@router.post("/conversations/{conversation_id}/read")
async def mark_conversation_read(
    conversation_id: str,
    user_id: str = Depends(rate_limited_user),
    service: MessagingService = Depends(get_service),
):
    """Explicitly mark every message in the conversation read for the caller."""
    updated = await service.mark_read(conversation_id, user_id)
    return envelope({"updated": len(updated)}, "Mensajes marcados como leídos")
