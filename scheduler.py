import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from config import get_settings
from database import session_scope
from errors import PartialTaggingFailure, StoreError
from rules import TaggingMode
from services import AutoTaggingService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.autotag_hour = settings.autotag_hour
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> int:
        logger.info(f"autotag_sweep: source={source}")
        try:
            with session_scope() as session:
                result = AutoTaggingService(session).run(TaggingMode.untagged_only)
        except PartialTaggingFailure as exc:
            logger.error(
                f"autotag_sweep: source={source} failed applied_so_far={exc.applied_so_far}"
            )
            return 0
        except StoreError:
            logger.exception(f"autotag_sweep: source={source} failed")
            return 0
        logger.info(f"autotag_sweep: source={source} tags_applied={result.tags_applied}")
        return result.tags_applied

    def start(self) -> None:
        if self.autotag_hour is None:
            logger.info("Scheduler disabled: EXPENSES_AUTOTAG_HOUR is empty")
            return

        self._run_job("startup")

        trigger = CronTrigger(hour=self.autotag_hour, minute=15)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=[f"daily_{self.autotag_hour:02d}:15"],
            id="autotag_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with daily untagged sweep at {self.autotag_hour:02d}:15"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
