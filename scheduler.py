import logging
from datetime import date
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from services import RecurringTransactionService

logger = logging.getLogger(__name__)


class SchedulerManager:
    """Posts due recurring transactions in the background."""

    def __init__(self, session_factory=session_scope) -> None:
        settings = get_settings()
        self.session_factory = session_factory
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def run_once(self, source: str = "manual", today: Optional[date] = None) -> int:
        logger.info(f"recurring_job: source={source}")
        with self.session_factory() as session:
            posted = RecurringTransactionService(session).catch_up_all(today)
        logger.info(f"recurring_job: source={source} posted={posted}")
        return posted

    def start(self) -> None:
        self.run_once("startup")

        self.scheduler.add_job(
            self.run_once,
            CronTrigger(hour=0, minute=30),
            args=["daily"],
            id="recurring_transactions_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        # missed daily runs (process asleep at 00:30) are caught here
        self.scheduler.add_job(
            self.run_once,
            IntervalTrigger(hours=1),
            args=["hourly"],
            id="recurring_transactions_hourly",
            replace_existing=True,
            misfire_grace_time=300,
        )
        self.scheduler.start()
        logger.info("recurring_job: scheduler started")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("recurring_job: scheduler stopped")
