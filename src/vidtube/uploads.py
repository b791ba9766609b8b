"""Staging of multipart files and upload to the media hosting service."""

from __future__ import annotations

import logging
import os
import shutil
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import cloudinary
import cloudinary.uploader
from fastapi import UploadFile
from prometheus_client import Counter

from .config import settings
from .errors import BadRequestError

logger = logging.getLogger(__name__)

cloudinary.config(
    cloud_name=settings.cloudinary_cloud_name,
    api_key=settings.cloudinary_api_key,
    api_secret=settings.cloudinary_api_secret,
    secure=True,
)

UPLOAD_FAILURE_COUNTER = Counter(
    "media_upload_failures_total", "Uploads to the media host that failed"
)

NONE = "none"
SINGLE = "single"
MULTIPLE = "multiple"


@dataclass
class UploadSlot:
    """The files received for one multipart field."""

    name: str
    kind: str = NONE
    files: List[UploadFile] = field(default_factory=list)

    @classmethod
    def from_files(cls, name: str, files: Optional[Iterable[UploadFile]]) -> "UploadSlot":
        received = [f for f in (files or []) if f is not None and f.filename]
        if not received:
            return cls(name)
        kind = SINGLE if len(received) == 1 else MULTIPLE
        return cls(name, kind, received)

    def single(self) -> Optional[UploadFile]:
        """Return the one file of the slot, ``None`` if it is empty."""
        if self.kind == MULTIPLE:
            raise BadRequestError(
                f"Only one file is allowed for {self.name}",
                errors=[
                    {
                        "field": self.name,
                        "message": f"expected 1 file, received {len(self.files)}",
                    }
                ],
            )
        if self.kind == NONE:
            return None
        return self.files[0]


def stage_upload(upload: Optional[UploadFile]) -> Optional[str]:
    """Copy an incoming file into the temp directory and return its path."""
    if upload is None:
        return None
    temp_dir = Path(settings.upload_temp_dir)
    temp_dir.mkdir(parents=True, exist_ok=True)
    suffix = Path(upload.filename or "").suffix
    target = temp_dir / f"{uuid.uuid4().hex}{suffix}"
    with target.open("wb") as out:
        shutil.copyfileobj(upload.file, out)
    return str(target)


def discard_staged(paths: Iterable[Optional[str]]) -> None:
    """Remove staged files that were never handed to the uploader."""
    for path in paths:
        if path and os.path.exists(path):
            _remove_local_file(path)


def _remove_local_file(local_file_path: str) -> None:
    try:
        os.remove(local_file_path)
    except FileNotFoundError:
        logger.warning("staged file already gone path=%s", local_file_path)


def upload_on_cloudinary(local_file_path: Optional[str]) -> Optional[Dict[str, object]]:
    """Upload a staged file and return the host's descriptor.

    Returns ``None`` when no path is given or when the upload fails. The
    staged file is deleted exactly once in both outcomes.
    """
    if not local_file_path:
        return None

    try:
        descriptor = cloudinary.uploader.upload(
            local_file_path, resource_type="auto", timeout=settings.upload_timeout
        )
        if not descriptor.get("url"):
            raise ValueError("upload response without url")
        logger.info("uploaded %s to %s", local_file_path, descriptor["url"])
        return descriptor
    except Exception:
        UPLOAD_FAILURE_COUNTER.inc()
        logger.warning("media upload failed path=%s", local_file_path, exc_info=True)
        return None
    finally:
        _remove_local_file(local_file_path)
