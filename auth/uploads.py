"""
auth/uploads.py -- Profile image storage on S3 via boto3.

ImageUploader.upload() takes the raw bytes of an uploaded file and returns a
durable public URL, or None when storage is disabled or the upload failed.
It runs as a background task after registration has already committed the
account, so a failure only means the account has no profile picture; it is
logged and never rolls anything back.

Storage is disabled when S3_BUCKET is empty (local development).
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from pathlib import PurePath

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from core.config import Settings, get_settings

logger = logging.getLogger("credgate.uploads")

MAX_IMAGE_SIZE_BYTES: int = 5 * 1024 * 1024


def _image_key(filename: str | None) -> str:
    """Build a unique, non-guessable object key. The client's filename only contributes its suffix."""
    suffix = PurePath(filename or "").suffix.lower()[:10]
    ts = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    return f"profile-pictures/{ts}_{uuid.uuid4().hex}{suffix}"


class ImageUploader:
    """Thin wrapper around a boto3 S3 client. One instance per process."""

    def __init__(self, settings: Settings | None = None, client=None) -> None:
        self._settings = settings or get_settings()
        self._client = client

    @property
    def is_configured(self) -> bool:
        return bool(self._settings.s3_bucket)

    def _s3(self):
        if self._client is None:
            s = self._settings
            self._client = boto3.client(
                "s3",
                region_name=s.aws_region,
                aws_access_key_id=s.aws_access_key_id or None,
                aws_secret_access_key=s.aws_secret_access_key or None,
            )
        return self._client

    def public_url(self, key: str) -> str:
        s = self._settings
        if s.s3_public_base_url:
            return f"{s.s3_public_base_url.rstrip('/')}/{key}"
        return f"https://{s.s3_bucket}.s3.{s.aws_region}.amazonaws.com/{key}"

    def upload(self, data: bytes, filename: str | None, content_type: str | None) -> str | None:
        """Store data and return its URL. Returns None when disabled or on failure."""
        if not self.is_configured:
            logger.warning("S3 not configured -- profile image discarded")
            return None
        key = _image_key(filename)
        try:
            self._s3().put_object(
                Bucket=self._settings.s3_bucket,
                Key=key,
                Body=data,
                ContentType=content_type or "application/octet-stream",
            )
        except (BotoCoreError, ClientError) as exc:
            logger.error("S3 put_object failed for key %s: %s", key, exc)
            return None
        return self.public_url(key)
