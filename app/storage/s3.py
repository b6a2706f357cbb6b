"""
Object storage for async-job uploads.

    s3://<bucket>/async-processing/<user_id>/<YYYY-MM-DD>/<job_id>/<sanitized name>

Keys are built here and persisted on the job row; a client-supplied key is
never used. The API uploads once at submission, the worker downloads once
per attempt, and cancel / delete remove the object (a missing object is
fine at that point).
"""

from __future__ import annotations

import logging
import mimetypes
import re
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone

import aioboto3
from botocore.exceptions import ClientError

from app.core.config import settings

logger = logging.getLogger(__name__)

KEY_PREFIX = "async-processing"

_UNSAFE_NAME_RE = re.compile(r"[^a-zA-Z0-9.-]")
_MISSING_CODES  = frozenset({"NoSuchKey", "404", "NotFound"})


def sanitize_file_name(file_name: str) -> str:
    return _UNSAFE_NAME_RE.sub("_", file_name)


def build_storage_key(user_id: str, job_id: str, file_name: str, now: datetime | None = None) -> str:
    day = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%d")
    return f"{KEY_PREFIX}/{user_id}/{day}/{job_id}/{sanitize_file_name(file_name)}"


def _is_missing(exc: ClientError) -> bool:
    return exc.response.get("Error", {}).get("Code") in _MISSING_CODES


@contextmanager
def _missing_as_file_not_found(key: str):
    try:
        yield
    except ClientError as exc:
        if _is_missing(exc):
            raise FileNotFoundError(f"No stored upload at {key}") from exc
        raise


@dataclass(frozen=True)
class S3Object:
    key:          str
    bucket:       str
    size_bytes:   int
    content_type: str
    etag:         str
    version_id:   str | None = None


class S3StorageService:
    """Upload / download / delete of job files in one bucket."""

    def __init__(self, bucket: str | None = None) -> None:
        self._bucket  = bucket or settings.s3_bucket
        self._session = aioboto3.Session()

    @property
    def bucket(self) -> str:
        return self._bucket

    def _client(self):
        # Static keys only in local dev; deployed workers use their IAM role
        return self._session.client(
            "s3",
            region_name=settings.aws_region,
            endpoint_url=settings.s3_endpoint_url or None,
        )

    async def put_object(
        self,
        key:          str,
        body:         bytes,
        content_type: str | None = None,
        metadata:     dict[str, str] | None = None,
    ) -> S3Object:
        """Store `body` at `key` (overwrites). Content type falls back to a guess from the key."""
        content_type = content_type or mimetypes.guess_type(key)[0] or "application/octet-stream"
        async with self._client() as s3:
            resp = await s3.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=body,
                ContentType=content_type,
                Metadata={k: str(v) for k, v in (metadata or {}).items()},
            )
        logger.info("Upload stored | key=%s bytes=%d", key, len(body))
        return S3Object(
            key=key,
            bucket=self._bucket,
            size_bytes=len(body),
            content_type=content_type,
            etag=resp.get("ETag", "").strip('"'),
            version_id=resp.get("VersionId"),
        )

    async def get_object(self, key: str) -> bytes:
        async with self._client() as s3:
            with _missing_as_file_not_found(key):
                resp = await s3.get_object(Bucket=self._bucket, Key=key)
                return await resp["Body"].read()

    async def head_object(self, key: str) -> dict:
        async with self._client() as s3:
            with _missing_as_file_not_found(key):
                return await s3.head_object(Bucket=self._bucket, Key=key)

    async def delete_object(self, key: str) -> None:
        async with self._client() as s3:
            try:
                await s3.delete_object(Bucket=self._bucket, Key=key)
            except ClientError as exc:
                if not _is_missing(exc):
                    raise
                logger.debug("Delete skipped, object already gone | key=%s", key)
                return
        logger.info("Upload removed | key=%s", key)
