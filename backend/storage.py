"""
Attachment file storage on local disk.

Files live under config.UPLOAD_DIR in one subfolder per parent type and are
referenced from the database by their path relative to that root.
"""

import logging
import os
import uuid
from pathlib import Path

from fastapi import HTTPException, status

import config
from enums import ParentType

logger = logging.getLogger(__name__)

SUBFOLDERS = {
    ParentType.TASK: "tasks",
    ParentType.INCIDENT: "incidents",
}


def validate_upload(content: bytes, mime_type: str) -> None:
    """
    Reject files that are too large or of a type we do not serve back.
    """
    if len(content) > config.MAX_UPLOAD_BYTES:
        limit_mb = config.MAX_UPLOAD_BYTES // (1024 * 1024)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"File size exceeds {limit_mb}MB limit",
        )
    if mime_type not in config.ALLOWED_UPLOAD_TYPES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="File type not allowed",
        )


def save_file(content: bytes, filename: str, parent_type: ParentType) -> str:
    """
    Write the file under a generated name and return its relative path.
    """
    subfolder = SUBFOLDERS[parent_type]
    ext = os.path.splitext(filename)[1].lower() if filename else ""
    safe_name = f"{uuid.uuid4().hex}{ext}"

    target_dir = Path(config.UPLOAD_DIR) / subfolder
    os.makedirs(target_dir, exist_ok=True)
    with open(target_dir / safe_name, "wb") as f:
        f.write(content)

    relative_path = f"{subfolder}/{safe_name}"
    logger.info(f"Stored upload '{filename}' at {relative_path} ({len(content)} bytes)")
    return relative_path


def resolve_path(relative_path: str) -> Path:
    """Absolute path for a stored file. Refuses paths escaping the upload root."""
    root = Path(config.UPLOAD_DIR).resolve()
    full_path = (root / relative_path).resolve()
    if root not in full_path.parents:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")
    return full_path


def delete_file(relative_path: str) -> bool:
    """
    Remove a stored file. Returns False if it was already gone.
    """
    full_path = resolve_path(relative_path)
    if not full_path.is_file():
        logger.warning(f"Attachment file already missing: {relative_path}")
        return False
    os.remove(full_path)
    logger.info(f"Deleted attachment file {relative_path}")
    return True
