import logging
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from alerts import BudgetAlertMonitor
from config import get_settings
from database import session_scope
from notifications import Dispatcher, EmailDispatcher
from recurrence import RecurringEngine
from reports import MonthlyReportGenerator, Narrator


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(
        self,
        dispatcher_factory: Callable[[], Dispatcher] = EmailDispatcher,
        narrator_factory: Optional[Callable[[], Narrator]] = None,
    ) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)
        self.dispatcher_factory = dispatcher_factory
        self.narrator_factory = narrator_factory

    def run_recurring(self, source: str = "manual") -> int:
        logger.info(f"recurring_run: source={source}")
        with session_scope() as session:
            count = RecurringEngine(session).post_due_transactions()
        logger.info(f"recurring_run: source={source} occurrences_posted={count}")
        return count

    def run_budget_alerts(self, source: str = "manual") -> int:
        with session_scope() as session:
            monitor = BudgetAlertMonitor(session, self.dispatcher_factory())
            count = monitor.run()
        logger.info(f"budget_alert_run: source={source} alerts_sent={count}")
        return count

    def run_monthly_reports(self, source: str = "manual") -> int:
        narrator = None
        if self.narrator_factory is not None:
            try:
                narrator = self.narrator_factory()
            except Exception as exc:
                logger.warning(f"monthly_report_narrator_unavailable: error={exc!r}")
        with session_scope() as session:
            generator = MonthlyReportGenerator(
                session, self.dispatcher_factory(), narrator
            )
            count = generator.run()
        logger.info(f"monthly_report_run: source={source} reports_sent={count}")
        return count

    def start(self) -> None:
        self.run_recurring("startup")

        self.scheduler.add_job(
            self.run_recurring,
            CronTrigger(hour=0, minute=15),
            args=["daily_00:15"],
            id="recurring_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.add_job(
            self.run_budget_alerts,
            IntervalTrigger(hours=6),
            args=["every_6h"],
            id="budget_alerts",
            replace_existing=True,
            misfire_grace_time=900,
        )
        self.scheduler.add_job(
            self.run_monthly_reports,
            CronTrigger(day=1, hour=6, minute=0),
            args=["monthly_day1"],
            id="monthly_reports",
            replace_existing=True,
            misfire_grace_time=6 * 3600,
        )

        self.scheduler.start()
        logger.info(
            "Scheduler started with daily recurring run, 6-hourly budget alerts "
            "and monthly reports"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
