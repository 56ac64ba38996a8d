import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from services import ImportProgressRegistry, progress_registry


logger = logging.getLogger(__name__)


class SchedulerManager:
    """Housekeeping jobs. Schedules are paid by users, never by this process."""

    def __init__(self, registry: Optional[ImportProgressRegistry] = None) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)
        self.registry = registry or progress_registry
        self.retention_secs = settings.progress_retention_secs

    def _run_job(self, source: str = "manual") -> int:
        purged = self.registry.purge_finished(self.retention_secs)
        logger.info(f"progress_purge: source={source} purged={purged}")
        return purged

    def start(self) -> None:
        trigger = IntervalTrigger(seconds=max(self.retention_secs // 3, 60))
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["interval"],
            id="import_progress_purge",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info("Scheduler started with import progress purge")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
