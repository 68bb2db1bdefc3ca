"""
Attachment service — keeps attachment rows and stored blobs in step.

Design notes
------------
- The blob store cannot join a database transaction, so consistency comes
  from ordering and compensation: blobs are written first, rows second,
  and any failure after a successful write deletes the written blob(s)
  before the error is surfaced.
- Compensation is best effort.  A delete that fails is logged as a leaked
  blob and never retried inside the request.
- Callers always see one coarse ``StorageUnavailableError``; partial
  success never escapes this module.
- Service functions flush but do not commit; the transaction boundary
  is owned by the caller (``get_db`` or an enclosing workflow).  Blobs
  whose rows were flushed are tracked on the session, and ``get_db``
  deletes them if the transaction later rolls back.
"""
import asyncio
import logging
from collections.abc import Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from blogapp.enums import EntityType
from blogapp.exceptions import StorageUnavailableError
from blogapp.models import Attachment, utcnow
from blogapp.storage import (
    BlobStore,
    BlobUpload,
    StoredBlob,
    blob_store,
    discard_blobs,
    track_pending_blobs,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _build_attachment(blob: StoredBlob, external_id: int, entity_type: EntityType) -> Attachment:
    return Attachment(
        path=blob.object_id,
        external_id=external_id,
        entity_type=entity_type,
        size=blob.size,
        original_name=blob.original_name,
        mime_type=blob.content_type,
    )


def attachment_to_dict(attachment: Attachment, store: BlobStore = blob_store) -> dict:
    return {
        "id": attachment.id,
        "path": attachment.path,
        "url": store.public_url(attachment.path),
        "mime_type": attachment.mime_type,
        "size": attachment.size,
        "original_name": attachment.original_name,
        "entity_type": attachment.entity_type.value,
        "external_id": attachment.external_id,
        "created_at": attachment.created_at.isoformat() if attachment.created_at else None,
    }


# ---------------------------------------------------------------------------
# Public service functions
# ---------------------------------------------------------------------------

async def create_attachment(
    db: AsyncSession,
    upload: BlobUpload,
    external_id: int,
    entity_type: EntityType,
    store: BlobStore = blob_store,
) -> Attachment:
    """
    Store one blob and record it as an attachment of
    (*entity_type*, *external_id*).

    Raises ``StorageUnavailableError`` when the upload fails, or when the
    metadata flush fails (after deleting the just-written blob).
    """
    blob = await store.upload(upload)

    attachment = _build_attachment(blob, external_id, entity_type)
    try:
        db.add(attachment)
        await db.flush()
    except SQLAlchemyError as exc:
        logger.error(
            "Attachment metadata write failed for %s %s, removing blob %s: %s",
            entity_type.value, external_id, blob.object_id, exc,
        )
        await discard_blobs(store, [blob.object_id])
        raise StorageUnavailableError() from exc

    track_pending_blobs(db, store, [blob.object_id])
    logger.info("Attachment %s created for %s %s", attachment.id, entity_type.value, external_id)
    return attachment


async def create_attachments(
    db: AsyncSession,
    uploads: Sequence[BlobUpload],
    external_id: int,
    entity_type: EntityType,
    store: BlobStore = blob_store,
) -> list[Attachment]:
    """
    Store a batch of blobs with all-or-nothing semantics.

    All uploads run concurrently and every started upload is allowed to
    finish.  If any of them failed, the successful ones are deleted and a
    single ``StorageUnavailableError`` is raised; no rows are written.
    Otherwise all rows are flushed together, and a failing flush deletes
    every uploaded blob before raising.
    """
    if not uploads:
        return []

    results = await asyncio.gather(
        *(store.upload(upload) for upload in uploads),
        return_exceptions=True,
    )
    stored = [r for r in results if isinstance(r, StoredBlob)]
    failures = [r for r in results if not isinstance(r, StoredBlob)]

    if failures:
        logger.error(
            "Batch upload for %s %s failed: %d of %d uploads rejected, compensating %d",
            entity_type.value, external_id, len(failures), len(uploads), len(stored),
        )
        await discard_blobs(store, [blob.object_id for blob in stored])
        raise StorageUnavailableError() from failures[0]

    attachments = [_build_attachment(blob, external_id, entity_type) for blob in stored]
    try:
        db.add_all(attachments)
        await db.flush()
    except SQLAlchemyError as exc:
        logger.error(
            "Batch attachment metadata write failed for %s %s: %s",
            entity_type.value, external_id, exc,
        )
        await discard_blobs(store, [blob.object_id for blob in stored])
        raise StorageUnavailableError() from exc

    track_pending_blobs(db, store, [blob.object_id for blob in stored])
    logger.info("%d attachments created for %s %s", len(attachments), entity_type.value, external_id)
    return attachments


async def get_attachments_by_entity_ids(
    db: AsyncSession,
    ids: Sequence[int],
    entity_type: EntityType,
) -> dict[int, list[Attachment]]:
    """
    Group the live attachments of the given owners by owner id.

    Owners without attachments are absent from the result.  An empty
    *ids* returns ``{}`` without querying.
    """
    if not ids:
        return {}

    q = (
        select(Attachment)
        .where(
            Attachment.entity_type == entity_type,
            Attachment.external_id.in_(list(ids)),
            Attachment.deleted_at.is_(None),
        )
        .order_by(Attachment.id)
    )
    result = await db.execute(q)

    attachment_map: dict[int, list[Attachment]] = {}
    for attachment in result.scalars().all():
        attachment_map.setdefault(attachment.external_id, []).append(attachment)
    return attachment_map


async def soft_delete_attachments(
    db: AsyncSession,
    external_ids: Sequence[int],
    entity_type: EntityType,
) -> int:
    """
    Mark the live attachments of the given owners as deleted.

    Blobs stay in the store until the retention purge hard-deletes the
    rows.  Returns the number of rows marked.
    """
    if not external_ids:
        return 0

    stmt = (
        update(Attachment)
        .where(
            Attachment.entity_type == entity_type,
            Attachment.external_id.in_(list(external_ids)),
            Attachment.deleted_at.is_(None),
        )
        .values(deleted_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    return result.rowcount or 0
