"""
Retention purge — permanent removal of soft-deleted rows and their blobs.

Design notes
------------
- One cutoff (``now - RETENTION_DAYS``) is computed per run and used for
  every table, so the run works from a single definition of "eligible".
- Tables are purged in dependency stages: children (attachments,
  reactions, comments), then posts, then parents (categories, roles,
  users).  A stage starts only after the previous one has finished;
  tables inside a stage run concurrently, each in its own session.
- Every table step is isolated: a failure is logged and recorded in the
  report, and the remaining steps and stages still run.  ``run`` never
  raises; the next scheduled run is the retry.
- Attachments are special: rows are selected and hard-deleted in one
  transaction, then the blobs are deleted outside it with independent
  best-effort attempts.  A failed blob delete leaves a leaked blob (logged)
  but never restores the row.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from blogapp.config import settings
from blogapp.database import async_session
from blogapp.models import (
    Attachment,
    Category,
    Comment,
    Post,
    Reaction,
    Role,
    User,
    utcnow,
)
from blogapp.storage import BlobStore, blob_store

logger = logging.getLogger(__name__)

ATTACHMENTS = "attachments"

# Tables purged through the generic path, grouped by stage.  Attachments
# join the first stage through their dedicated step.
CHILD_TABLES = (Reaction, Comment)
MID_TABLES = (Post,)
PARENT_TABLES = (Category, Role, User)


def retention_cutoff(now: datetime | None = None, retention_days: int | None = None) -> datetime:
    days = settings.RETENTION_DAYS if retention_days is None else retention_days
    return (now or utcnow()) - timedelta(days=days)


@dataclass
class PurgeReport:
    cutoff: datetime
    deleted: dict[str, int] = field(default_factory=dict)
    failed: dict[str, str] = field(default_factory=dict)
    leaked_blobs: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.leaked_blobs

    def to_dict(self) -> dict:
        return {
            "cutoff": self.cutoff.isoformat(),
            "deleted": dict(self.deleted),
            "failed": dict(self.failed),
            "leaked_blobs": list(self.leaked_blobs),
        }


class RetentionPurger:
    """
    Runs one purge cycle.

    *session_factory* must hand out independent sessions: steps of the
    same stage run concurrently and an ``AsyncSession`` cannot be shared
    between tasks.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = async_session,
        store: BlobStore = blob_store,
        retention_days: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._store = store
        self._retention_days = retention_days

    async def run(self, now: datetime | None = None) -> PurgeReport:
        report = PurgeReport(cutoff=retention_cutoff(now, self._retention_days))
        logger.info("Retention purge started (cutoff=%s)", report.cutoff.isoformat())

        await asyncio.gather(
            self._step(report, ATTACHMENTS, self.purge_attachments(report.cutoff, report)),
            *(
                self._step(report, model.__tablename__, self.purge_table(model, report.cutoff))
                for model in CHILD_TABLES
            ),
        )
        for model in MID_TABLES:
            await self._step(report, model.__tablename__, self.purge_table(model, report.cutoff))
        await asyncio.gather(
            *(
                self._step(report, model.__tablename__, self.purge_table(model, report.cutoff))
                for model in PARENT_TABLES
            ),
        )

        if report.ok:
            logger.info("Retention purge finished: %s", report.deleted)
        else:
            logger.warning(
                "Retention purge finished with problems: deleted=%s failed=%s leaked_blobs=%d",
                report.deleted, report.failed, len(report.leaked_blobs),
            )
        return report

    async def _step(self, report: PurgeReport, name: str, work) -> None:
        try:
            report.deleted[name] = await work
        except Exception as exc:
            logger.exception("Retention purge of %s failed", name)
            report.failed[name] = str(exc) or exc.__class__.__name__

    async def purge_table(self, model, cutoff: datetime) -> int:
        """Hard-delete rows of *model* soft-deleted before *cutoff*."""
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(model)
                    .where(model.deleted_at.is_not(None), model.deleted_at < cutoff)
                    .execution_options(synchronize_session=False)
                )
        count = result.rowcount or 0
        logger.debug("Purged %d row(s) from %s", count, model.__tablename__)
        return count

    async def purge_attachments(self, cutoff: datetime, report: PurgeReport) -> int:
        """
        Hard-delete eligible attachment rows in one transaction, then
        remove their blobs.  Blob failures go to ``report.leaked_blobs``.
        """
        async with self._session_factory() as session:
            async with session.begin():
                condition = (Attachment.deleted_at.is_not(None), Attachment.deleted_at < cutoff)
                paths = list(
                    (await session.execute(select(Attachment.path).where(*condition))).scalars().all()
                )
                if not paths:
                    return 0
                await session.execute(
                    delete(Attachment)
                    .where(*condition)
                    .execution_options(synchronize_session=False)
                )

        results = await asyncio.gather(
            *(self._store.delete(path) for path in paths),
            return_exceptions=True,
        )
        for path, result in zip(paths, results):
            if result is not True:
                logger.error("Purged attachment left blob behind: %s (%s)", path, result)
                report.leaked_blobs.append(path)
        return len(paths)


async def run_retention_purge() -> PurgeReport:
    """Entry point for the scheduler: one cycle with the default wiring."""
    return await RetentionPurger().run()
