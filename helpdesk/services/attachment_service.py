"""Attachment storage for inbound email files."""

import io
import os
import re
import uuid
from typing import BinaryIO

from sqlalchemy.orm import Session

from helpdesk.core.config import settings
from helpdesk.db.models import Attachment, Message
from helpdesk.schemas.ticketing import EmailAttachment
from helpdesk.services.storage_client import get_s3_client

DEFAULT_FILENAME = "unnamed"
DEFAULT_MIME_TYPE = "application/octet-stream"

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


# =============================================================================
# Storage Backend
# =============================================================================

def _get_storage_backend() -> str:
    """Get configured storage backend."""
    return settings.STORAGE_BACKEND


def _get_local_storage_path() -> str:
    """Get local storage directory path."""
    path = settings.LOCAL_STORAGE_PATH
    os.makedirs(path, exist_ok=True)
    return path


def _local_path(storage_key: str) -> str:
    """Absolute path for ``storage_key``, refusing anything outside the storage root."""
    root = os.path.realpath(_get_local_storage_path())
    path = os.path.realpath(os.path.join(root, storage_key))
    if os.path.commonpath([root, path]) != root:
        raise ValueError(f"Storage key escapes storage root: {storage_key!r}")
    return path


def store_file(storage_key: str, file: BinaryIO, content_type: str | None = None) -> None:
    """Store file to configured backend."""
    backend = _get_storage_backend()

    if backend == "s3":
        s3 = get_s3_client()
        extra_args = {"ContentType": content_type} if content_type else None
        s3.upload_fileobj(file, settings.S3_BUCKET, storage_key, ExtraArgs=extra_args)
    else:
        path = _local_path(storage_key)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb") as f:
            file.seek(0)
            f.write(file.read())


def read_file(storage_key: str) -> bytes:
    """Read a stored file back from the configured backend."""
    if _get_storage_backend() == "s3":
        response = get_s3_client().get_object(Bucket=settings.S3_BUCKET, Key=storage_key)
        return response["Body"].read()
    with open(_local_path(storage_key), "rb") as f:
        return f.read()


# =============================================================================
# Service Functions
# =============================================================================

def safe_filename(filename: str | None) -> str:
    """Basename of ``filename`` reduced to a conservative character set."""
    name = os.path.basename((filename or "").replace("\\", "/"))
    name = _UNSAFE_FILENAME_CHARS.sub("_", name).lstrip(".")
    return name or DEFAULT_FILENAME


def build_storage_key(ticket_id: uuid.UUID, filename: str | None) -> str:
    return f"attachments/{ticket_id}/{uuid.uuid4()}_{safe_filename(filename)}"


def store_message_attachments(
    db: Session,
    message: Message,
    attachments: list[EmailAttachment],
) -> list[Attachment]:
    """
    Write each attachment blob under the ticket's namespace and record it.

    Size comes from the actual content length, never a declared size.
    """
    stored: list[Attachment] = []
    for payload in attachments:
        filename = payload.filename or DEFAULT_FILENAME
        mime_type = payload.mime_type or DEFAULT_MIME_TYPE
        storage_key = build_storage_key(message.ticket_id, filename)
        store_file(storage_key, io.BytesIO(payload.content), mime_type)

        attachment = Attachment(
            message_id=message.id,
            filename=filename,
            path=storage_key,
            mime_type=mime_type,
            size=len(payload.content),
        )
        db.add(attachment)
        stored.append(attachment)
    if stored:
        db.flush()
    return stored
