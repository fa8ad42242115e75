"""
Blob Store — S3-compatible object storage for uploaded documents

Layout:
    s3://<BUCKET>/projects/<project_id>/<base>_<epoch_ms>_<uuid>.<ext>

  <base> is the original filename stem with every non-alphanumeric
  character replaced by "_"; the timestamp and uuid make names unique, so
  re-uploading the same file never overwrites an earlier object.

Error mapping:
  NoSuchKey / 404          → NotFoundError  (permanent; the job is not retried)
  any other ClientError    → ProviderError  (transient; the queue retries)
  BotoCoreError            → ProviderError

Works against AWS, MinIO or LocalStack (set S3_ENDPOINT_URL).
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from dataclasses import dataclass

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

from studydocs.core.config import Settings
from studydocs.core.exceptions import NotFoundError, ProviderError

logger = logging.getLogger(__name__)

_UNSAFE_RE = re.compile(r"[^a-zA-Z0-9]")

_MISSING_CODES = ("NoSuchKey", "404", "NotFound")


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StoredObject:
    """Returned by BlobStore.upload()."""
    path:         str     # object key, stored on Document.storage_path
    bucket:       str
    file_name:    str
    size_bytes:   int
    content_type: str
    etag:         str


def project_folder(project_id: uuid.UUID | str) -> str:
    return f"projects/{project_id}"


def generate_file_name(original_name: str, *, now_ms: int | None = None, unique: str | None = None) -> str:
    """
    <base>_<epoch_ms>_<uuid>.<ext>

    >>> generate_file_name("My Notes.v2.pdf", now_ms=1700000000000, unique="abc")
    'My_Notes_v2_1700000000000_abc.pdf'
    """
    stem, dot, extension = original_name.rpartition(".")
    if not dot:
        stem, extension = original_name, ""
    base      = _UNSAFE_RE.sub("_", stem)
    timestamp = now_ms if now_ms is not None else int(time.time() * 1000)
    unique    = unique or str(uuid.uuid4())
    name      = f"{base}_{timestamp}_{unique}"
    return f"{name}.{extension}" if extension else name


# ---------------------------------------------------------------------------
# Blob store
# ---------------------------------------------------------------------------

class BlobStore:
    """
    Async S3 operations for the documents bucket.

    One instance per process; aioboto3 clients are opened per call.
    """

    def __init__(self, settings: Settings, session: aioboto3.Session | None = None) -> None:
        self._settings = settings
        self._bucket   = settings.s3_bucket
        self._session  = session or aioboto3.Session()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _client(self):
        """Return a scoped async S3 client context manager."""
        kwargs: dict = {"region_name": self._settings.aws_region}
        if self._settings.s3_endpoint_url:
            kwargs["endpoint_url"] = self._settings.s3_endpoint_url
        # Local dev: static keys; prod: instance role (no keys configured)
        if self._settings.aws_access_key_id:
            kwargs["aws_access_key_id"]     = self._settings.aws_access_key_id
            kwargs["aws_secret_access_key"] = self._settings.aws_secret_access_key
        return self._session.client("s3", **kwargs)

    @staticmethod
    def _is_missing(exc: ClientError) -> bool:
        return exc.response.get("Error", {}).get("Code") in _MISSING_CODES

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def upload(
        self,
        data:         bytes,
        folder:       str,
        filename:     str,
        content_type: str,
    ) -> StoredObject:
        file_name = generate_file_name(filename)
        key       = f"{folder}/{file_name}"

        try:
            async with self._client() as s3:
                resp = await s3.put_object(
                    Bucket=self._bucket,
                    Key=key,
                    Body=data,
                    ContentType=content_type,
                    Metadata={"original_name": _UNSAFE_RE.sub("_", filename)},
                )
        except (ClientError, BotoCoreError) as exc:
            logger.error("Blob upload failed | key=%s error=%s", key, exc)
            raise ProviderError(f"Failed to upload {filename}: {exc}") from exc

        logger.info("Blob upload ok | key=%s size=%d", key, len(data))
        return StoredObject(
            path=key,
            bucket=self._bucket,
            file_name=file_name,
            size_bytes=len(data),
            content_type=content_type,
            etag=resp.get("ETag", "").strip('"'),
        )

    async def download(self, path: str) -> bytes:
        try:
            async with self._client() as s3:
                resp = await s3.get_object(Bucket=self._bucket, Key=path)
                data = await resp["Body"].read()
        except ClientError as exc:
            if self._is_missing(exc):
                raise NotFoundError("File", path) from exc
            raise ProviderError(f"Failed to download {path}: {exc}") from exc
        except BotoCoreError as exc:
            raise ProviderError(f"Failed to download {path}: {exc}") from exc

        logger.info("Blob download ok | key=%s size=%d", path, len(data))
        return data

    async def delete(self, path: str) -> None:
        try:
            async with self._client() as s3:
                await s3.delete_object(Bucket=self._bucket, Key=path)
        except (ClientError, BotoCoreError) as exc:
            raise ProviderError(f"Failed to delete {path}: {exc}") from exc
        logger.info("Blob delete ok | key=%s", path)

    async def exists(self, path: str) -> bool:
        try:
            async with self._client() as s3:
                await s3.head_object(Bucket=self._bucket, Key=path)
        except ClientError as exc:
            if self._is_missing(exc):
                return False
            raise ProviderError(f"Failed to check {path}: {exc}") from exc
        except BotoCoreError as exc:
            raise ProviderError(f"Failed to check {path}: {exc}") from exc
        return True
