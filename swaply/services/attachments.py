"""
Attachment upload storage.

WHAT: Persist an uploaded file and describe it for an image/file message
WHY: Message content only carries {url, filename, size, mimeType}
HOW: Extension allowlist and size cap, then write to UPLOAD_DIR under a random name
"""

import mimetypes
from pathlib import Path
from typing import Optional
from uuid import uuid4

from fastapi import UploadFile

from ..core.config import settings
from ..models.content import AttachmentDescriptor
from ..utils.exceptions import InvalidContentException
from ..utils.logger import get_logger

logger = get_logger(__name__)

IMAGE_EXTENSIONS = {"jpeg", "jpg", "png", "gif"}


class AttachmentStorage:
    """Interface: save(upload) -> AttachmentDescriptor, delete(descriptor)."""

    async def save(self, upload: UploadFile) -> AttachmentDescriptor:
        raise NotImplementedError

    async def delete(self, descriptor: AttachmentDescriptor):
        raise NotImplementedError


class LocalAttachmentStorage(AttachmentStorage):
    """Writes uploads to a local directory served under /uploads/messages."""

    def __init__(self, upload_dir: Optional[str] = None, url_prefix: str = "/uploads/messages"):
        self.upload_dir = Path(upload_dir or settings.UPLOAD_DIR)
        self.url_prefix = url_prefix.rstrip("/")

    async def save(self, upload: UploadFile) -> AttachmentDescriptor:
        """
        Raises:
            InvalidContentException: disallowed extension or file too large
        """
        filename = Path(upload.filename or "").name
        extension = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
        if extension not in settings.get_allowed_extensions():
            raise InvalidContentException("Tipo de archivo no permitido")

        data = await upload.read()
        if len(data) > settings.ATTACHMENT_MAX_BYTES:
            raise InvalidContentException("El archivo es demasiado grande")

        self.upload_dir.mkdir(parents=True, exist_ok=True)
        stored_name = f"{uuid4().hex}.{extension}"
        (self.upload_dir / stored_name).write_bytes(data)

        mime_type = upload.content_type or mimetypes.guess_type(filename)[0] or "application/octet-stream"
        logger.info(f"Stored attachment {filename} as {stored_name} ({len(data)} bytes)")
        return AttachmentDescriptor(
            url=f"{self.url_prefix}/{stored_name}",
            filename=filename,
            size=len(data),
            mime_type=mime_type,
        )

    async def delete(self, descriptor: AttachmentDescriptor):
        """Remove a stored file (a send that failed after the upload was written)."""
        stored_name = descriptor.url.rsplit("/", 1)[-1]
        (self.upload_dir / stored_name).unlink(missing_ok=True)
        logger.info(f"Removed attachment {stored_name} after a failed send")


def is_image(descriptor: AttachmentDescriptor) -> bool:
    return descriptor.mime_type.startswith("image/") or descriptor.filename.rsplit(".", 1)[-1].lower() in IMAGE_EXTENSIONS
