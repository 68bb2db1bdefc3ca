"""
Blob store client for an S3-compatible object storage service.

boto3 is synchronous, so every SDK call is pushed onto a worker thread
with ``asyncio.to_thread``; callers only ever ``await`` and other request
tasks keep running while an upload is in flight.
"""
import asyncio
import logging
import mimetypes
import os
import uuid
from collections.abc import Iterable
from dataclasses import dataclass

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from blogapp.config import settings
from blogapp.exceptions import StorageUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"


@dataclass(frozen=True)
class BlobUpload:
    """Raw bytes received from a client plus the hints it sent along."""

    data: bytes
    content_type: str | None = None
    filename: str | None = None


@dataclass(frozen=True)
class StoredBlob:
    """What the store reports back after a successful write."""

    object_id: str
    size: int
    content_type: str
    original_name: str | None = None


class BlobStore:
    """
    Upload / delete objects in a single bucket.

    ``upload`` raises ``StorageUnavailableError`` on any transport or
    provider error.  ``delete`` never raises: it returns False and logs,
    because every caller treats a failed delete as a leak to report, not
    as a reason to abort.
    """

    def __init__(self, bucket: str | None = None, key_prefix: str | None = None, client=None) -> None:
        self.bucket = bucket or settings.BLOB_BUCKET
        self.key_prefix = (key_prefix if key_prefix is not None else settings.BLOB_KEY_PREFIX).strip("/")
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client(
                "s3",
                endpoint_url=settings.BLOB_ENDPOINT_URL or None,
                region_name=settings.BLOB_REGION or None,
                aws_access_key_id=settings.BLOB_ACCESS_KEY_ID or None,
                aws_secret_access_key=settings.BLOB_SECRET_ACCESS_KEY or None,
            )
        return self._client

    def _make_key(self, filename: str | None) -> str:
        extension = os.path.splitext(filename)[1].lower() if filename else ""
        name = f"{uuid.uuid4().hex}{extension}"
        return f"{self.key_prefix}/{name}" if self.key_prefix else name

    @staticmethod
    def _resolve_content_type(upload: BlobUpload) -> str:
        if upload.content_type:
            return upload.content_type
        if upload.filename:
            guessed, _ = mimetypes.guess_type(upload.filename)
            if guessed:
                return guessed
        return DEFAULT_CONTENT_TYPE

    async def upload(self, upload: BlobUpload) -> StoredBlob:
        key = self._make_key(upload.filename)
        content_type = self._resolve_content_type(upload)
        try:
            await asyncio.to_thread(
                self.client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=upload.data,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as exc:
            logger.error("Blob upload failed for %r (key=%s): %s", upload.filename, key, exc)
            raise StorageUnavailableError() from exc

        logger.info("Uploaded blob %s (%d bytes, %s)", key, len(upload.data), content_type)
        return StoredBlob(
            object_id=key,
            size=len(upload.data),
            content_type=content_type,
            original_name=upload.filename,
        )

    async def delete(self, object_id: str) -> bool:
        try:
            await asyncio.to_thread(self.client.delete_object, Bucket=self.bucket, Key=object_id)
        except (BotoCoreError, ClientError) as exc:
            logger.error("Blob delete failed for %s: %s", object_id, exc)
            return False
        logger.info("Deleted blob %s", object_id)
        return True

    def public_url(self, object_id: str) -> str | None:
        if not settings.BLOB_PUBLIC_URL:
            return None
        return f"{settings.BLOB_PUBLIC_URL.rstrip('/')}/{object_id}"


# Module-level singleton shared across request handlers and the purge job.
blob_store = BlobStore()


# ---------------------------------------------------------------------------
# Compensation
# ---------------------------------------------------------------------------

# ``session.info`` key listing (store, object id) pairs whose attachment
# rows are flushed but not yet committed.
PENDING_BLOBS_KEY = "pending_blobs"


async def discard_blobs(store: BlobStore, object_ids: Iterable[str]) -> list[str]:
    """
    Delete *object_ids* concurrently, each attempt independent of the
    others.  Returns the ids that could not be deleted (leaked blobs).
    """
    object_ids = list(object_ids)
    if not object_ids:
        return []

    results = await asyncio.gather(
        *(store.delete(object_id) for object_id in object_ids),
        return_exceptions=True,
    )
    leaked = [
        object_id
        for object_id, result in zip(object_ids, results)
        if result is not True
    ]
    for object_id in leaked:
        logger.error("Compensation failed, blob leaked: %s", object_id)
    return leaked


def track_pending_blobs(session, store: BlobStore, object_ids: Iterable[str]) -> None:
    """Remember blobs that must go if *session*'s transaction rolls back."""
    session.info.setdefault(PENDING_BLOBS_KEY, []).extend(
        (store, object_id) for object_id in object_ids
    )


async def discard_pending_blobs(session) -> list[str]:
    """
    Delete the blobs tracked on *session* after its transaction rolled
    back.  Returns the leaked ids.  A commit clears the list instead
    (see ``blogapp.database``).
    """
    pending = session.info.pop(PENDING_BLOBS_KEY, [])
    by_store: dict[int, tuple[BlobStore, list[str]]] = {}
    for store, object_id in pending:
        by_store.setdefault(id(store), (store, []))[1].append(object_id)

    leaked: list[str] = []
    for store, object_ids in by_store.values():
        logger.warning(
            "Transaction rolled back, removing %d uploaded blob(s)", len(object_ids)
        )
        leaked.extend(await discard_blobs(store, object_ids))
    return leaked


def get_blob_store() -> BlobStore:
    """FastAPI dependency; tests override it with an in-memory store."""
    return blob_store
