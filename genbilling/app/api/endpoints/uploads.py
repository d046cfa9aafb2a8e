"""Signed direct-to-storage uploads for generation inputs."""

from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import Any

from fastapi import APIRouter, Depends

from ...core.config import settings
from ...core.errors import RequestError
from ...core.gcs import GcsBlobStager, max_upload_bytes
from ...core.ratelimit import limiter_uploads
from ...schemas.base import CreateSignedUploadRequest, CreateSignedUploadResponse
from ...services.ledger import Account
from ..deps import get_blob_stager, get_current_account

logger = logging.getLogger(__name__)

router = APIRouter()


class FileTooLargeError(RequestError):
    code = "file_too_large"


def safe_random_path(account_id: str, filename: str) -> str:
    """``<account_id>/<uuid><ext>``; the client filename contributes only its extension."""
    ext = Path(filename).suffix[:10]
    return f"{account_id}/{uuid.uuid4()}{ext}"


@router.post(
    "/uploads/create-signed",
    response_model=CreateSignedUploadResponse,
    dependencies=[Depends(limiter_uploads)],
)
def create_signed_uploads(
    payload: CreateSignedUploadRequest,
    current_account: Account = Depends(get_current_account),
    stager: GcsBlobStager = Depends(get_blob_stager),
) -> Any:
    if len(payload.files) > settings.max_upload_files:
        raise RequestError(f"At most {settings.max_upload_files} files per request")

    limit = max_upload_bytes()
    for item in payload.files:
        if item.sizeBytes > limit:
            raise FileTooLargeError(f"File exceeds {settings.max_upload_mb}MB")

    items = []
    for item in payload.files:
        path = safe_random_path(current_account.id, item.filename)
        upload_url = stager.create_upload_url(path, item.contentType, item.sizeBytes)
        items.append({"path": path, "upload_url": upload_url})

    logger.info(
        "Issued signed uploads",
        extra={"data": {"account_id": current_account.id, "count": len(items)}},
    )
    return {"bucket": stager.bucket, "items": items}
