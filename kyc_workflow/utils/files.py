import os
from dataclasses import dataclass
from typing import Optional
from uuid import uuid4

from fastapi import UploadFile

from kyc_workflow.errors import ValidationError


@dataclass
class StoredFile:
    file_name: str
    path: str
    mime_type: str
    size_bytes: int


def _safe_suffix(file_name: str) -> str:
    _, ext = os.path.splitext(file_name or "")
    ext = ext.lower()
    if not ext or len(ext) > 10 or not ext[1:].isalnum():
        return ""
    return ext


def write_bytes(content: bytes, file_name: str, mime_type: Optional[str], directory: str,
                max_bytes: Optional[int] = None) -> StoredFile:
    if not content:
        raise ValidationError("Uploaded file is empty")
    if max_bytes is not None and len(content) > max_bytes:
        raise ValidationError(f"Uploaded file exceeds {max_bytes} bytes")

    os.makedirs(directory, exist_ok=True)
    path = os.path.join(directory, uuid4().hex + _safe_suffix(file_name))
    with open(path, "wb") as f:
        f.write(content)

    return StoredFile(
        file_name=os.path.basename(file_name or "") or "upload",
        path=path,
        mime_type=mime_type or "application/octet-stream",
        size_bytes=len(content),
    )


async def save_upload(upload: UploadFile, directory: str, max_bytes: Optional[int] = None) -> StoredFile:
    content = await upload.read()
    return write_bytes(content, upload.filename or "", upload.content_type, directory, max_bytes)


def discard(stored: StoredFile) -> None:
    """Remove a stored file that never became a document."""
    try:
        os.remove(stored.path)
    except FileNotFoundError:
        pass
