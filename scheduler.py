import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from database import session_scope
from models import Notification, NotificationPreference, Transaction
from services import NotificationService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def known_user_ids(session: Session) -> list[int]:
    ids: set[int] = set()
    for model in (Transaction, Notification, NotificationPreference):
        ids.update(session.scalars(select(model.user_id).distinct()).all())
    return sorted(ids)


def sweep_all_users(session: Session) -> int:
    max_age_days = get_settings().notification_retention_days
    removed = 0
    for user_id in known_user_ids(session):
        removed += NotificationService(session, user_id).sweep_old(max_age_days)
    return removed


def send_monthly_reports(session: Session) -> int:
    sent = 0
    for user_id in known_user_ids(session):
        if NotificationService(session, user_id).create_monthly_report():
            sent += 1
    return sent


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_sweep(self, source: str = "manual") -> None:
        logger.info(f"retention_sweep: source={source}")
        with session_scope() as session:
            removed = sweep_all_users(session)
            logger.info(f"retention_sweep: source={source} removed={removed}")

    def _run_monthly_report(self, source: str = "manual") -> None:
        with session_scope() as session:
            sent = send_monthly_reports(session)
            logger.info(f"monthly_report: source={source} sent={sent}")

    def start(self) -> None:
        self.scheduler.add_job(
            self._run_sweep,
            CronTrigger(hour=3, minute=15),
            args=["daily_03:15"],
            id="notification_retention_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.add_job(
            self._run_monthly_report,
            CronTrigger(day=1, hour=9, minute=0),
            args=["monthly_day1_09:00"],
            id="monthly_report",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.start()
        logger.info("Scheduler started with daily retention sweep and monthly report")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
