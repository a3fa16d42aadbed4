"""
Renewal Scheduler - Time-Driven Lifecycle Jobs

Daily jobs over subscriptions whose period or grace window has come due:
1. process_renewals: renewal checks, then period rollover
2. send_renewal_reminders: 7/3/1 day notices, once each per period
3. expire_grace_periods: past_due beyond grace -> suspended

Each subscription runs in its own session, so one failure never aborts the
batch. All state changes go through SubscriptionStateMachine.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Optional, Any
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledgerline.models.subscription import Subscription, SubscriptionStatus
from ledgerline.modules.billing.domain.state_machine import SubscriptionStateMachine
from ledgerline.shared.core.config import Settings, get_settings
from ledgerline.shared.core.ops_metrics import SCHEDULER_JOB_RUNS, SCHEDULER_JOB_DURATION
from ledgerline.shared.db.base import utc_now

logger = structlog.get_logger()

StateMachineFactory = Callable[[AsyncSession], SubscriptionStateMachine]
SubscriptionAction = Callable[[SubscriptionStateMachine, UUID], Awaitable[Any]]


@dataclass
class JobSummary:
    job: str
    examined: int = 0
    errors: int = 0
    outcomes: Dict[str, int] = field(default_factory=dict)

    def record(self, outcome: Any) -> None:
        key = getattr(outcome, "value", outcome)
        key = "skipped" if key in (None, False) else str(key)
        self.outcomes[key] = self.outcomes.get(key, 0) + 1

    def count(self, outcome: str) -> int:
        return self.outcomes.get(outcome, 0)


class RenewalScheduler:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        state_machine_factory: StateMachineFactory,
        clock: Optional[Callable[[], datetime]] = None,
        settings: Optional[Settings] = None,
        concurrency: Optional[int] = None,
    ):
        self.session_maker = session_maker
        self.state_machine_factory = state_machine_factory
        self.clock = clock or utc_now
        self.settings = settings or get_settings()
        self.concurrency = concurrency or self.settings.SCHEDULER_CONCURRENCY

    async def process_renewals(self) -> JobSummary:
        """Renewal attempt for every subscription inside the lookahead window, then rollover."""
        now = self.clock()
        horizon = now + timedelta(days=self.settings.RENEWAL_LOOKAHEAD_DAYS)
        ids = await self._select_ids(
            select(Subscription.id)
            .where(
                Subscription.status.in_([SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value]),
                Subscription.auto_renew.is_(True),
                Subscription.current_period_end <= horizon,
            )
            .order_by(Subscription.current_period_end)
        )
        summary = await self._run_each("subscription_renewals", ids, lambda machine, sub_id: machine.attempt_renewal(sub_id))
        await self.roll_over_lapsed_periods()
        return summary

    async def roll_over_lapsed_periods(self) -> JobSummary:
        now = self.clock()
        ids = await self._select_ids(
            select(Subscription.id).where(
                Subscription.status.in_([SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value]),
                Subscription.current_period_end <= now,
            )
        )
        return await self._run_each("period_rollover", ids, lambda machine, sub_id: machine.roll_over_period(sub_id))

    async def send_renewal_reminders(self) -> JobSummary:
        now = self.clock()
        widest = max(self.settings.RENEWAL_REMINDER_DAYS)
        ids = await self._select_ids(
            select(Subscription.id).where(
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.auto_renew.is_(True),
                Subscription.cancel_at_period_end.is_(False),
                Subscription.current_period_end > now,
                Subscription.current_period_end <= now + timedelta(days=widest + 1),
            )
        )

        async def remind(machine: SubscriptionStateMachine, sub_id: UUID) -> str:
            days = await machine.record_reminder(sub_id, self.settings.RENEWAL_REMINDER_DAYS)
            return f"sent_{days}d" if days else "skipped"

        return await self._run_each("renewal_reminders", ids, remind)

    async def expire_grace_periods(self) -> JobSummary:
        now = self.clock()
        ids = await self._select_ids(
            select(Subscription.id).where(
                Subscription.status == SubscriptionStatus.PAST_DUE.value,
                Subscription.grace_period_end.is_not(None),
                Subscription.grace_period_end < now,
            )
        )

        async def expire(machine: SubscriptionStateMachine, sub_id: UUID) -> str:
            return "suspended" if await machine.expire_grace_period(sub_id) else "skipped"

        return await self._run_each("grace_period_expiry", ids, expire)

    async def _select_ids(self, stmt) -> list[UUID]:
        async with self.session_maker() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def _run_each(self, job_name: str, ids: list[UUID], action: SubscriptionAction) -> JobSummary:
        summary = JobSummary(job=job_name, examined=len(ids))
        semaphore = asyncio.Semaphore(self.concurrency)
        start = time.perf_counter()

        async def run_one(sub_id: UUID) -> None:
            async with semaphore:
                async with self.session_maker() as db:
                    machine = self.state_machine_factory(db)
                    try:
                        summary.record(await action(machine, sub_id))
                    except Exception as e:
                        summary.errors += 1
                        logger.error(
                            "scheduler_subscription_failed",
                            job=job_name,
                            subscription_id=str(sub_id),
                            error=str(e),
                            exc_info=True,
                        )

        await asyncio.gather(*(run_one(sub_id) for sub_id in ids))

        SCHEDULER_JOB_RUNS.labels(job_name=job_name, status="failure" if summary.errors else "success").inc()
        SCHEDULER_JOB_DURATION.labels(job_name=job_name).observe(time.perf_counter() - start)
        logger.info(
            "scheduler_job_completed",
            job=job_name,
            examined=summary.examined,
            errors=summary.errors,
            outcomes=summary.outcomes,
        )
        return summary
