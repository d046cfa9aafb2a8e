"""Google Cloud Storage blob stager (signed upload and read URLs for job inputs)."""

from __future__ import annotations

import datetime as dt
import logging
import os
import re
from dataclasses import dataclass
from typing import Any

from google.auth.transport.requests import Request as GoogleAuthRequest
from google.cloud import storage

from .config import settings
from .errors import ServiceError

logger = logging.getLogger(__name__)

_BUCKET_RE = re.compile(r"^[a-z0-9][a-z0-9._-]{1,220}[a-z0-9]$")
_PREFIX_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9/_-]{0,250}[A-Za-z0-9]$")


class TimeoutRequest(GoogleAuthRequest):
    def __call__(self, *args, **kwargs):
        kwargs.setdefault("timeout", 30)
        return super().__call__(*args, **kwargs)


class StorageNotConfiguredError(ServiceError):
    code = "storage_error"
    status_code = 503
    default_message = "Uploads are not configured"


class UploadSigningError(ServiceError):
    code = "storage_error"
    default_message = "Signed upload failed"


class StagingError(ServiceError):
    code = "signed_url_failed"
    default_message = "Failed to sign input"


@dataclass(frozen=True)
class GcsSettings:
    bucket: str
    uploads_prefix: str
    upload_url_ttl_seconds: int
    read_url_ttl_seconds: int


def _clamp_ttl_seconds(value: int, default: int) -> int:
    if value <= 0:
        return default
    # Avoid long-lived signed URLs. Large uploads can take time, but hours-long URLs
    # increase replay exposure if leaked.
    return max(60, min(value, 6 * 60 * 60))


def _normalize_prefix(value: str | None, default: str) -> str:
    cleaned = (value or "").strip().strip("/")
    if not cleaned:
        cleaned = default
    if ".." in cleaned or cleaned.startswith(("/", "\\")) or cleaned.endswith(("/", "\\")):
        raise ValueError("Invalid GCS prefix")
    if not _PREFIX_RE.match(cleaned):
        raise ValueError("Invalid GCS prefix")
    return cleaned


def get_gcs_settings() -> GcsSettings | None:
    """Return configured GCS settings, or None when GCS is disabled."""
    bucket = os.getenv("GEN_GCS_BUCKET")
    if not bucket:
        return None
    bucket = bucket.strip()
    if not _BUCKET_RE.match(bucket):
        raise ValueError("Invalid GEN_GCS_BUCKET")
    uploads_prefix = _normalize_prefix(os.getenv("GEN_GCS_UPLOADS_PREFIX"), "inputs")
    upload_ttl = _clamp_ttl_seconds(int(os.getenv("GEN_GCS_UPLOAD_URL_TTL_SECONDS", "3600")), 3600)
    read_ttl = _clamp_ttl_seconds(settings.input_read_url_ttl_seconds, 3600)
    return GcsSettings(
        bucket=bucket,
        uploads_prefix=uploads_prefix,
        upload_url_ttl_seconds=upload_ttl,
        read_url_ttl_seconds=read_ttl,
    )


def _refresh_access_token(client: Any) -> str:
    credentials = client._credentials
    # Use TimeoutRequest to prevent hanging on auth refresh
    credentials.refresh(TimeoutRequest())
    token = credentials.token
    if not token:
        raise RuntimeError("Could not obtain Google access token for signing")
    return token


def _signing_service_account_email(client: Any) -> str:
    override = os.getenv("GEN_GCS_SIGNER_EMAIL")
    if override:
        return override.strip()
    credentials = client._credentials
    email = getattr(credentials, "service_account_email", None) or getattr(credentials, "signer_email", None)
    if not email:
        raise RuntimeError("Could not determine signer email; set GEN_GCS_SIGNER_EMAIL")
    return str(email)


def generate_signed_upload_url(
    *,
    gcs_settings: GcsSettings,
    object_name: str,
    content_type: str,
    content_length: int | None = None,
) -> str:
    """
    Generate a V4 signed URL for a direct browser upload (PUT) to GCS.

    Note: In Cloud Run / GCE environments, signed URLs require IAM signBlob permissions
    (typically `roles/iam.serviceAccountTokenCreator` on the runtime service account).
    """
    client = storage.Client()
    blob = client.bucket(gcs_settings.bucket).blob(object_name)

    headers = {}
    if content_length is not None:
        headers["Content-Length"] = str(content_length)

    return blob.generate_signed_url(
        version="v4",
        expiration=dt.timedelta(seconds=gcs_settings.upload_url_ttl_seconds),
        method="PUT",
        content_type=content_type,
        service_account_email=_signing_service_account_email(client),
        access_token=_refresh_access_token(client),
        scheme="https",
        headers=headers if headers else None,
    )


def generate_signed_read_url(*, gcs_settings: GcsSettings, object_name: str) -> str:
    """Generate a short-lived signed GET URL the executor can fetch an input from."""
    client = storage.Client()
    blob = client.bucket(gcs_settings.bucket).blob(object_name)
    return blob.generate_signed_url(
        version="v4",
        expiration=dt.timedelta(seconds=gcs_settings.read_url_ttl_seconds),
        method="GET",
        service_account_email=_signing_service_account_email(client),
        access_token=_refresh_access_token(client),
        scheme="https",
    )


def max_upload_bytes(provided_settings: Any | None = None) -> int:
    s = provided_settings or settings
    return int(s.max_upload_mb) * 1024 * 1024


class GcsBlobStager:
    """Blob stager over a single GCS bucket.

    Paths handed to callers are relative (``<account_id>/<name>``); the
    configured uploads prefix is applied here only.
    """

    def __init__(self, gcs_settings: GcsSettings | None = None) -> None:
        self._gcs_settings = gcs_settings

    @property
    def gcs_settings(self) -> GcsSettings:
        resolved = self._gcs_settings or get_gcs_settings()
        if resolved is None:
            raise StorageNotConfiguredError()
        return resolved

    @property
    def bucket(self) -> str:
        return self.gcs_settings.bucket

    def object_name(self, path: str) -> str:
        return f"{self.gcs_settings.uploads_prefix}/{path.lstrip('/')}"

    def create_upload_url(self, path: str, content_type: str, size_bytes: int) -> str:
        gcs_settings = self.gcs_settings
        try:
            return generate_signed_upload_url(
                gcs_settings=gcs_settings,
                object_name=self.object_name(path),
                content_type=content_type,
                content_length=size_bytes,
            )
        except Exception as exc:
            logger.warning("Failed to generate GCS signed upload URL: %s", exc)
            raise UploadSigningError() from exc

    def create_read_url(self, path: str) -> str:
        gcs_settings = self.gcs_settings
        try:
            return generate_signed_read_url(gcs_settings=gcs_settings, object_name=self.object_name(path))
        except Exception as exc:
            logger.warning("Failed to sign input url: %s", exc)
            raise StagingError() from exc
