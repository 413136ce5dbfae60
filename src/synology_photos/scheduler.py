from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from .domain.models import RefreshOutcome
from .settings import AppSettings

if TYPE_CHECKING:
    from .pipeline import PhotoPipeline

LOGGER = logging.getLogger(__name__)

PHOTOS_REFRESH_JOB_ID = "photos_refresh_job"


class RefreshScheduler:
    """Re-runs the fetch pipeline on a timer armed after every completed cycle.

    Idle -> Fetching -> Idle; the timer for the next cycle starts when a cycle
    finishes, whatever its outcome. Triggers that arrive while a cycle is in
    flight are dropped by the pipeline and do not re-arm the timer.
    """

    def __init__(
        self,
        pipeline: PhotoPipeline,
        *,
        interval_minutes: int,
        misfire_grace_seconds: int = 120,
        scheduler: AsyncIOScheduler | None = None,
    ) -> None:
        self._pipeline = pipeline
        self.interval = timedelta(minutes=interval_minutes)
        self._misfire_grace_seconds = misfire_grace_seconds
        self._scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)

    @classmethod
    def from_settings(cls, pipeline: PhotoPipeline, settings: AppSettings) -> RefreshScheduler:
        return cls(
            pipeline,
            interval_minutes=settings.yaml.refresh.interval_minutes,
            misfire_grace_seconds=settings.yaml.refresh.misfire_grace_seconds,
        )

    @property
    def running(self) -> bool:
        return self._scheduler.running

    @property
    def next_run_time(self) -> datetime | None:
        job = self._scheduler.get_job(PHOTOS_REFRESH_JOB_ID)
        if job is None:
            return None
        return getattr(job, "next_run_time", None)

    def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()

    def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)

    def _arm(self, run_date: datetime) -> None:
        self._scheduler.add_job(
            self.trigger,
            "date",
            run_date=run_date,
            id=PHOTOS_REFRESH_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=self._misfire_grace_seconds,
        )

    def schedule_now(self) -> None:
        self._arm(datetime.now(timezone.utc))

    async def trigger(self) -> RefreshOutcome | None:
        outcome = await self._pipeline.refresh()
        if outcome is None:
            return None

        run_date = datetime.now(timezone.utc) + self.interval
        self._arm(run_date)
        if outcome.succeeded:
            LOGGER.info("Photos refresh job completed; next run at %s", run_date)
        else:
            LOGGER.warning("Photos refresh job failed (%s); next run at %s", outcome.error, run_date)
        return outcome
