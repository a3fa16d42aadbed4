"""
Tests for RenewalScheduler - renewals, dunning, grace expiry, reminders, rollover
"""
from datetime import datetime, timedelta, timezone

import pytest

from ledgerline.models.subscription import SubscriptionStatus
from ledgerline.modules.billing.adapters.base import RemoteStatus
from ledgerline.modules.billing.domain.orchestrator import BillingSchedulerOrchestrator
from ledgerline.modules.billing.domain.renewal_scheduler import JobSummary, RenewalScheduler
from ledgerline.modules.notifications.domain.base import NotificationKind

S = SubscriptionStatus
MAY_1 = datetime(2026, 5, 1, tzinfo=timezone.utc)


@pytest.fixture
def scheduler(session_maker, machine_factory, clock):
    # One worker: the in-memory test database shares a single connection
    return RenewalScheduler(session_maker, machine_factory, clock=clock, concurrency=1)


def test_job_summary_counts_outcomes():
    summary = JobSummary(job="renewals")
    summary.record(None)
    summary.record(False)
    summary.record("sent_7d")
    summary.record(S.ACTIVE)

    assert summary.count("skipped") == 2
    assert summary.count("sent_7d") == 1
    assert summary.count("active") == 1


# --- renewals and dunning ---

@pytest.mark.asyncio
async def test_successful_renewal_extends_one_cycle(scheduler, make_subscription, reload, notifier, clock):
    sub = await make_subscription()
    clock.now = MAY_1 - timedelta(hours=12)

    summary = await scheduler.process_renewals()

    assert summary.count("renewed") == 1
    sub = await reload(sub.id)
    assert sub.state == S.ACTIVE
    assert sub.current_period_start == MAY_1
    assert sub.current_period_end == datetime(2026, 6, 1, tzinfo=timezone.utc)
    assert notifier.count(NotificationKind.RENEWAL_SUCCEEDED) == 1

    # Next run finds nothing due
    again = await scheduler.process_renewals()
    assert again.examined == 0


@pytest.mark.asyncio
async def test_renewal_attempts_are_spaced_a_day_apart(scheduler, make_subscription, gateway, clock):
    await make_subscription()
    gateway.remote_status = S.PAST_DUE
    clock.now = MAY_1 - timedelta(hours=12)

    first = await scheduler.process_renewals()
    clock.advance(hours=2)
    second = await scheduler.process_renewals()

    assert first.count("failed") == 1
    assert second.count("skipped") == 1
    assert gateway.status_calls == 1


@pytest.mark.asyncio
async def test_repeated_failures_open_grace_period_once(scheduler, make_subscription, reload, gateway, notifier, clock):
    sub = await make_subscription()
    gateway.status_error = "connection reset"
    clock.now = MAY_1 - timedelta(hours=12)

    outcomes = []
    for _ in range(4):
        summary = await scheduler.process_renewals()
        outcomes.extend(k for k, v in summary.outcomes.items() for _ in range(v))
        clock.advance(days=1)

    assert outcomes == ["failed", "failed", "grace_started", "failed"]
    sub = await reload(sub.id)
    assert sub.state == S.PAST_DUE
    assert sub.renewal_attempts == 4
    assert sub.grace_period_end == MAY_1 + timedelta(days=1, hours=12) + timedelta(days=7)
    assert notifier.count(NotificationKind.RENEWAL_FAILED) == 2
    assert notifier.count(NotificationKind.GRACE_PERIOD_STARTED) == 1
    assert notifier.count(NotificationKind.PAYMENT_FAILED) == 0


@pytest.mark.asyncio
async def test_renewal_after_failures_restores_active(scheduler, make_subscription, reload, gateway, clock):
    sub = await make_subscription()
    gateway.remote_status = S.PAST_DUE
    clock.now = MAY_1 - timedelta(hours=12)
    await scheduler.process_renewals()

    gateway.remote_status = S.ACTIVE
    clock.advance(days=1)
    await scheduler.process_renewals()

    sub = await reload(sub.id)
    assert sub.state == S.ACTIVE
    assert sub.renewal_attempts == 0
    assert sub.current_period_end == datetime(2026, 6, 1, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_one_failing_subscription_does_not_abort_batch(session_maker, machine_factory, make_subscription, reload, clock):
    bad = await make_subscription()
    good = await make_subscription()

    def flaky_factory(session):
        machine = machine_factory(session)
        attempt = machine.attempt_renewal

        async def attempt_renewal(sub_id):
            if sub_id == bad.id:
                raise RuntimeError("boom")
            return await attempt(sub_id)

        machine.attempt_renewal = attempt_renewal
        return machine

    scheduler = RenewalScheduler(session_maker, flaky_factory, clock=clock, concurrency=1)
    clock.now = MAY_1 - timedelta(hours=12)

    summary = await scheduler.process_renewals()

    assert summary.examined == 2
    assert summary.errors == 1
    assert summary.count("renewed") == 1
    assert (await reload(good.id)).current_period_end > MAY_1


@pytest.mark.asyncio
async def test_unmapped_remote_status_is_a_failed_attempt(scheduler, make_subscription, gateway, notifier, clock):
    await make_subscription()
    gateway.remote_status = None
    clock.now = MAY_1 - timedelta(hours=12)

    summary = await scheduler.process_renewals()

    assert summary.count("failed") == 1
    assert notifier.last(NotificationKind.RENEWAL_FAILED)["reason"] == "Provider reports status 'incomplete'"


@pytest.mark.asyncio
@pytest.mark.parametrize("remote_status", [S.ACTIVE, S.PAST_DUE])
async def test_subscription_cancelled_mid_run_is_skipped(
    scheduler, session_maker, machine_factory, make_subscription, reload, gateway, notifier, clock, remote_status
):
    sub = await make_subscription(status=S.PAST_DUE, renewal_attempts=2)
    clock.now = MAY_1 - timedelta(hours=12)

    async def get_status_after_user_cancels(gateway_subscription_id):
        async with session_maker() as session:
            await machine_factory(session).cancel_subscription(sub.id, immediate=True)
        return RemoteStatus(status=remote_status, raw_status=remote_status.value)

    gateway.get_status = get_status_after_user_cancels

    summary = await scheduler.process_renewals()

    assert summary.count("skipped") == 1
    sub = await reload(sub.id)
    assert sub.state == S.CANCELLED
    assert sub.grace_period_end is None
    assert sub.renewal_attempts == 2
    assert sub.current_period_end == MAY_1
    assert notifier.count(NotificationKind.RENEWAL_SUCCEEDED) == 0
    assert notifier.count(NotificationKind.GRACE_PERIOD_STARTED) == 0


# --- grace expiry ---

@pytest.mark.asyncio
async def test_grace_period_expires_strictly_after_end(scheduler, make_subscription, reload, notifier, clock):
    grace_end = clock.now + timedelta(days=7)
    sub = await make_subscription(status=S.PAST_DUE, renewal_attempts=3, grace_period_end=grace_end)

    clock.now = grace_end
    at_boundary = await scheduler.expire_grace_periods()
    assert at_boundary.examined == 0
    assert (await reload(sub.id)).state == S.PAST_DUE

    clock.advance(seconds=1)
    after = await scheduler.expire_grace_periods()
    assert after.count("suspended") == 1
    assert (await reload(sub.id)).state == S.SUSPENDED
    assert notifier.count(NotificationKind.SUBSCRIPTION_SUSPENDED) == 1

    final = await scheduler.expire_grace_periods()
    assert final.examined == 0


# --- reminders ---

@pytest.mark.asyncio
async def test_each_reminder_sent_once_per_period(scheduler, make_subscription, reload, notifier, clock):
    sub = await make_subscription()

    sent = []
    for day in (20, 24, 24, 26, 28, 30, 30):
        clock.now = datetime(2026, 4, day, 9, tzinfo=timezone.utc)
        summary = await scheduler.send_renewal_reminders()
        sent.extend(k for k in summary.outcomes if k.startswith("sent_"))

    assert sent == ["sent_7d", "sent_3d", "sent_1d"]
    assert notifier.count(NotificationKind.RENEWAL_REMINDER) == 3
    assert notifier.last(NotificationKind.RENEWAL_REMINDER)["days"] == 1
    assert (await reload(sub.id)).reminders_sent == [7, 3, 1]


@pytest.mark.asyncio
async def test_late_start_skips_wider_reminders(scheduler, make_subscription, notifier, clock):
    await make_subscription(period_start=clock.now - timedelta(days=28))
    clock.advance(hours=9)

    await scheduler.send_renewal_reminders()

    assert [c["days"] for k, _, c in notifier.sent if k == NotificationKind.RENEWAL_REMINDER] == [3]


@pytest.mark.asyncio
async def test_no_reminder_when_cancelling_at_period_end(scheduler, machine, make_subscription, notifier, clock):
    sub = await make_subscription()
    await machine.cancel_subscription(sub.id, reason="closing down")
    clock.now = datetime(2026, 4, 28, 9, tzinfo=timezone.utc)

    summary = await scheduler.send_renewal_reminders()

    assert summary.examined == 0
    assert notifier.count(NotificationKind.RENEWAL_REMINDER) == 0


@pytest.mark.asyncio
async def test_renewal_resets_reminders_for_next_period(scheduler, make_subscription, reload, clock):
    sub = await make_subscription(reminders_sent=[7, 3, 1])
    clock.now = MAY_1 - timedelta(hours=12)

    await scheduler.process_renewals()

    assert (await reload(sub.id)).reminders_sent == []


# --- rollover ---

@pytest.mark.asyncio
async def test_cancel_at_period_end_finalizes_after_period(scheduler, machine, make_subscription, reload, gateway, clock):
    sub = await make_subscription()
    await machine.cancel_subscription(sub.id, reason="budget")

    clock.now = MAY_1 - timedelta(hours=12)
    summary = await scheduler.process_renewals()
    assert summary.count("skipped") == 1
    assert (await reload(sub.id)).state == S.ACTIVE

    clock.now = MAY_1 + timedelta(hours=1)
    await scheduler.process_renewals()

    sub = await reload(sub.id)
    assert sub.state == S.CANCELLED
    assert sub.cancelled_at == clock.now
    assert gateway.cancelled == ["sub_test_1"]


@pytest.mark.asyncio
async def test_scheduled_downgrade_applies_at_period_end(scheduler, machine, make_subscription, reload, plans, notifier, clock):
    sub = await make_subscription("growth")
    await machine.downgrade_plan(sub.id, "starter")

    clock.now = MAY_1 + timedelta(hours=1)
    summary = await scheduler.roll_over_lapsed_periods()

    assert summary.count("downgraded") == 1
    sub = await reload(sub.id)
    assert sub.plan_id == "starter"
    assert sub.limits_snapshot == plans["starter"].limits
    assert sub.plan_change is None
    assert sub.current_period_start == MAY_1
    assert sub.current_period_end == datetime(2026, 6, 1, tzinfo=timezone.utc)
    assert notifier.count(NotificationKind.DOWNGRADE_APPLIED) == 1


@pytest.mark.asyncio
async def test_period_without_auto_renew_expires(scheduler, make_subscription, reload, gateway, clock):
    sub = await make_subscription(auto_renew=False)

    clock.now = MAY_1 + timedelta(minutes=5)
    renewals = await scheduler.process_renewals()

    assert renewals.examined == 0
    assert gateway.status_calls == 0
    assert (await reload(sub.id)).state == S.EXPIRED


# --- orchestrator ---

@pytest.mark.asyncio
async def test_orchestrator_registers_daily_jobs(session_maker, machine_factory):
    orchestrator = BillingSchedulerOrchestrator(session_maker, machine_factory)
    orchestrator.start()
    try:
        status = orchestrator.get_status()
        assert status["running"] is True
        assert set(status["jobs"]) == {
            "daily_subscription_renewals",
            "daily_grace_period_expiry",
            "daily_renewal_reminders",
        }
    finally:
        orchestrator.stop()


@pytest.mark.asyncio
async def test_orchestrator_job_records_last_run(session_maker, machine_factory, plans):
    orchestrator = BillingSchedulerOrchestrator(session_maker, machine_factory)

    await orchestrator.grace_expiry_job()

    status = orchestrator.get_status()
    assert status["last_run_success"] is True
    assert status["last_run_time"] is not None
