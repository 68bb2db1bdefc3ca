"""APScheduler wrapper for the weekly retention purge."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from blogapp.config import settings
from blogapp.services.purge_service import run_retention_purge

logger = logging.getLogger(__name__)

PURGE_JOB_ID = "retention_purge"


class PurgeScheduler:
    """Owns the process-wide AsyncIOScheduler and the purge job."""

    def __init__(self, job: Callable[[], Awaitable[object]] = run_retention_purge) -> None:
        self._scheduler = AsyncIOScheduler(timezone="UTC")
        self._job = job
        self._started = False

    @property
    def running(self) -> bool:
        return self._started

    def start(self) -> None:
        if self._started:
            return
        self._scheduler.add_job(
            self._job,
            trigger=IntervalTrigger(weeks=settings.PURGE_INTERVAL_WEEKS),
            id=PURGE_JOB_ID,
            replace_existing=True,
            # A missed or overlapping run waits for the next interval.
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        self._started = True
        logger.info("Retention purge scheduled every %d week(s)", settings.PURGE_INTERVAL_WEEKS)

    def shutdown(self) -> None:
        if self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False


purge_scheduler = PurgeScheduler()
