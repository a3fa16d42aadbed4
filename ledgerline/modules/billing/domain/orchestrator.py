from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from datetime import datetime, timezone
from typing import Optional
import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

from ledgerline.modules.billing.domain.factory import build_state_machine
from ledgerline.modules.billing.domain.renewal_scheduler import RenewalScheduler, StateMachineFactory
from ledgerline.shared.core.config import get_settings

logger = structlog.get_logger()


class BillingSchedulerOrchestrator:
    """Manages APScheduler and the daily billing jobs."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        state_machine_factory: Optional[StateMachineFactory] = None,
    ):
        self.settings = get_settings()
        self.scheduler = AsyncIOScheduler()
        self.renewals = RenewalScheduler(
            session_maker,
            state_machine_factory or build_state_machine,
            settings=self.settings,
        )
        self._last_run_success: bool | None = None
        self._last_run_time: str | None = None

    async def renewal_job(self):
        summary = await self.renewals.process_renewals()
        self._mark_run(summary.errors == 0)

    async def grace_expiry_job(self):
        summary = await self.renewals.expire_grace_periods()
        self._mark_run(summary.errors == 0)

    async def reminder_job(self):
        summary = await self.renewals.send_renewal_reminders()
        self._mark_run(summary.errors == 0)

    def _mark_run(self, success: bool) -> None:
        self._last_run_success = success
        self._last_run_time = datetime.now(timezone.utc).isoformat()

    def start(self):
        """Defines cron schedules and starts APScheduler."""
        # Renewals then rollover: Daily 2AM
        self.scheduler.add_job(
            self.renewal_job,
            trigger=CronTrigger(hour=self.settings.SCHEDULER_RENEWAL_HOUR, minute=0, timezone="UTC"),
            id="daily_subscription_renewals",
            replace_existing=True
        )
        # Grace expiry: Daily 3AM
        self.scheduler.add_job(
            self.grace_expiry_job,
            trigger=CronTrigger(hour=self.settings.SCHEDULER_GRACE_EXPIRY_HOUR, minute=0, timezone="UTC"),
            id="daily_grace_period_expiry",
            replace_existing=True
        )
        # Reminders: Daily 10AM
        self.scheduler.add_job(
            self.reminder_job,
            trigger=CronTrigger(hour=self.settings.SCHEDULER_REMINDER_HOUR, minute=0, timezone="UTC"),
            id="daily_renewal_reminders",
            replace_existing=True
        )
        self.scheduler.start()
        logger.info("billing_scheduler_started", jobs=[job.id for job in self.scheduler.get_jobs()])

    def stop(self):
        self.scheduler.shutdown(wait=True)

    def get_status(self) -> dict:
        return {
            "running": self.scheduler.running,
            "last_run_success": self._last_run_success,
            "last_run_time": self._last_run_time,
            "jobs": [job.id for job in self.scheduler.get_jobs()]
        }
