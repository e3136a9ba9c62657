import logging
from datetime import datetime, timezone
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from epg_aggregator.config import settings
from epg_aggregator.services.fetch_coordinator import get_fetch_coordinator


logger = logging.getLogger(__name__)

JOB_ID = "epg_refresh"


class EPGScheduler:
    """
    Cron-driven EPG refreshes

    Each run goes through the fetch coordinator as a background refresh, so
    scheduled runs share the single-flight guard with manual ones and can be
    cancelled through the API like any other refresh.
    """

    def __init__(self):
        self.scheduler: AsyncIOScheduler | None = None
        self.cron_expression: str | None = None

    async def _refresh_job(self) -> None:
        coordinator = get_fetch_coordinator()
        if not coordinator.start_refresh():
            logger.info("Scheduled EPG refresh skipped, another refresh is running")
            return

        logger.info("Scheduled EPG refresh started")
        result = await coordinator.wait()
        status = result.get("status") if result else None
        if status == "error":
            logger.error(f"Scheduled refresh failed: {result['error']}")
        else:
            logger.info(f"Scheduled refresh finished with status {status}")

    def start(self, cron_expression: str | None = None, *, run_now: bool = False) -> None:
        """
        Start the scheduler

        Args:
            cron_expression: Crontab string (EPG_FETCH_CRON when None)
            run_now: Also fire the job once immediately
        """
        if self.scheduler and self.scheduler.running:
            logger.warning("Scheduler already running")
            return

        expression = cron_expression or settings.epg_fetch_cron
        try:
            trigger = CronTrigger.from_crontab(expression, timezone=timezone.utc)
        except (ValueError, KeyError) as exc:
            logger.error("Invalid cron expression '%s': %s", expression, exc)
            raise

        job_options = {}
        if run_now:
            job_options["next_run_time"] = datetime.now(timezone.utc)

        self.scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self.scheduler.add_job(
            self._refresh_job,
            trigger=trigger,
            id=JOB_ID,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=settings.epg_fetch_misfire_grace_sec,
            **job_options
        )
        self.scheduler.start()
        self.cron_expression = expression

        next_time = self.get_next_run_time()
        logger.info(
            "Scheduler started (%s). Next refresh: %s",
            expression,
            next_time.isoformat() if next_time else "unknown"
        )

    def shutdown(self) -> None:
        if self.scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
        self.scheduler = None

    def is_running(self) -> bool:
        return bool(self.scheduler and self.scheduler.running)

    def get_next_run_time(self) -> datetime | None:
        """Next time the refresh job fires, or None when not scheduled"""
        if not self.scheduler:
            return None
        job = self.scheduler.get_job(JOB_ID)
        return job.next_run_time if job else None

    def describe(self) -> dict:
        next_run = self.get_next_run_time()
        return {
            "running": self.is_running(),
            "cron": self.cron_expression,
            "next_run": next_run.isoformat() if next_run else None,
        }


epg_scheduler = EPGScheduler()
