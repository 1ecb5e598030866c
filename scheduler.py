import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from config import get_settings
from database import session_scope
from services import AutoClearService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        self.settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=self.settings.timezone)

    def _run_job(self, source: str = "manual") -> None:
        logger.info(f"auto_clear_run: source={source}")
        with session_scope() as session:
            result = AutoClearService(session).clear_due()
        logger.info(
            f"auto_clear_run: source={source} expenses={result.expenses} "
            f"income={result.income}"
        )

    def start(self) -> None:
        if not self.settings.auto_clear_enabled:
            logger.info("Scheduler disabled (LEDGER_AUTO_CLEAR_ENABLED is off)")
            return

        hour = self.settings.auto_clear_hour
        self.scheduler.add_job(
            self._run_job,
            CronTrigger(hour=hour, minute=0),
            args=[f"daily_{hour:02d}:00"],
            id="auto_clear_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.start()
        logger.info(f"Scheduler started with daily auto-clear at {hour:02d}:00")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
