"""
Subscription State Machine

Single writer of subscription state. User commands, reconciled webhooks and the
renewal scheduler all funnel through here.

Every mutation follows the same shape:
1. read and validate without holding the subscription lock
2. perform the gateway call (bounded by the adapter timeout)
3. re-read the row under the lock, re-validate, apply the outcome, commit
4. send notifications after the commit

Transitions:
    pending        -> active, payment_failed, cancelled
    payment_failed -> active, cancelled
    active         -> past_due, cancelled, expired
    past_due       -> active, suspended, cancelled
    suspended      -> active, cancelled
    cancelled, expired: terminal
"""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Optional, AsyncIterator
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerline.models.invoice import Invoice
from ledgerline.models.pricing import SubscriptionPlan
from ledgerline.models.subscription import (
    Subscription,
    SubscriptionStatus,
    PaymentProvider,
    PendingUpgrade,
    ScheduledDowngrade,
    Cancellation,
    AppliedDiscount,
    UpgradeStatus,
    TERMINAL_STATUSES,
)
from ledgerline.modules.billing.adapters.base import ChargeResult, GatewaySubscriptionResult
from ledgerline.modules.billing.adapters.registry import GatewayRegistry
from ledgerline.modules.billing.domain.coupons import find_coupon
from ledgerline.modules.billing.domain.cycles import calculate_period_end
from ledgerline.modules.billing.domain.invoices import InvoiceRecorder
from ledgerline.modules.billing.domain.locks import SubscriptionLockRegistry, subscription_locks
from ledgerline.modules.billing.domain.proration import ProrationCalculator
from ledgerline.modules.billing.domain.usage import UsageProvider, SqlUsageProvider, find_limit_violations
from ledgerline.modules.notifications.domain.base import NotificationKind, NotificationSink
from ledgerline.shared.core.config import get_settings
from ledgerline.shared.core.exceptions import (
    ConfigurationError,
    GatewayError,
    InvalidCouponError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    QuotaExceededError,
)
from ledgerline.shared.core.ops_metrics import NOTIFICATION_FAILURES, SUBSCRIPTION_TRANSITIONS, UNAPPLIED_CHARGES
from ledgerline.shared.db.base import utc_now

logger = structlog.get_logger()

S = SubscriptionStatus

ALLOWED_TRANSITIONS: Dict[SubscriptionStatus, frozenset] = {
    S.PENDING: frozenset({S.ACTIVE, S.PAYMENT_FAILED, S.CANCELLED}),
    S.PAYMENT_FAILED: frozenset({S.ACTIVE, S.CANCELLED}),
    S.ACTIVE: frozenset({S.PAST_DUE, S.CANCELLED, S.EXPIRED}),
    S.PAST_DUE: frozenset({S.ACTIVE, S.SUSPENDED, S.CANCELLED}),
    S.SUSPENDED: frozenset({S.ACTIVE, S.CANCELLED}),
    S.CANCELLED: frozenset(),
    S.EXPIRED: frozenset(),
}


def can_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class RenewalOutcome(str, Enum):
    RENEWED = "renewed"
    FAILED = "failed"
    GRACE_STARTED = "grace_started"
    SKIPPED = "skipped"


class RolloverOutcome(str, Enum):
    CANCELLED = "cancelled"
    DOWNGRADED = "downgraded"
    EXPIRED = "expired"
    UNCHANGED = "unchanged"


class SubscriptionStateMachine:
    def __init__(
        self,
        db: AsyncSession,
        gateways: GatewayRegistry,
        notifier: NotificationSink,
        invoices: Optional[InvoiceRecorder] = None,
        usage: Optional[UsageProvider] = None,
        proration: Optional[ProrationCalculator] = None,
        locks: Optional[SubscriptionLockRegistry] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.gateways = gateways
        self.notifier = notifier
        self.invoices = invoices or InvoiceRecorder(db)
        self.usage = usage or SqlUsageProvider(db)
        self.proration = proration or ProrationCalculator()
        self.locks = locks or subscription_locks
        self.clock = clock or utc_now
        self.settings = get_settings()

    # ------------------------------------------------------------------
    # plumbing
    # ------------------------------------------------------------------

    async def get_subscription(self, subscription_id: UUID, tenant_id: Optional[UUID] = None) -> Subscription:
        result = await self.db.execute(select(Subscription).where(Subscription.id == subscription_id))
        sub = result.scalar_one_or_none()
        if sub is None:
            raise NotFoundError(f"Subscription {subscription_id} not found")
        if tenant_id is not None and sub.tenant_id != tenant_id:
            logger.warning(
                "subscription_tenant_mismatch",
                subscription_id=str(subscription_id),
                tenant_id=str(tenant_id),
            )
            raise PermissionDeniedError()
        return sub

    async def _get_plan(self, plan_id: str) -> SubscriptionPlan:
        plan = await self.db.get(SubscriptionPlan, plan_id)
        if plan is None:
            raise NotFoundError(f"Plan {plan_id} not found")
        return plan

    @asynccontextmanager
    async def _locked(self, subscription_id: UUID) -> AsyncIterator[Subscription]:
        """Fresh row under the per-subscription lock; commits on success, rolls back on error."""
        async with self.locks.hold(subscription_id):
            result = await self.db.execute(
                select(Subscription)
                .where(Subscription.id == subscription_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            sub = result.scalar_one_or_none()
            if sub is None:
                raise NotFoundError(f"Subscription {subscription_id} not found")
            try:
                yield sub
                await self.db.commit()
            except BaseException:
                await self.db.rollback()
                raise

    async def _release_read(self) -> None:
        """Ends the read transaction so no database state is held across gateway I/O."""
        await self.db.commit()

    def _transition(self, sub: Subscription, target: SubscriptionStatus, reason: str) -> bool:
        current = sub.state
        if current == target:
            return False
        if not can_transition(current, target):
            raise InvalidTransitionError(
                f"Cannot move subscription from {current.value} to {target.value}",
                details={"subscription_id": str(sub.id), "from": current.value, "to": target.value},
            )
        sub.status = target.value
        if target != S.PAST_DUE:
            sub.grace_period_end = None

        SUBSCRIPTION_TRANSITIONS.labels(from_status=current.value, to_status=target.value).inc()
        logger.info(
            "subscription_transition",
            subscription_id=str(sub.id),
            tenant_id=str(sub.tenant_id),
            from_status=current.value,
            to_status=target.value,
            reason=reason,
        )
        return True

    async def _notify(self, kind: NotificationKind, sub: Subscription, **context: Any) -> None:
        try:
            await self.notifier.notify(kind, sub, **context)
        except Exception as e:
            NOTIFICATION_FAILURES.labels(kind=kind.value).inc()
            logger.error(
                "notification_failed",
                kind=kind.value,
                subscription_id=str(sub.id),
                error=str(e),
            )

    @staticmethod
    def _swap_plan(sub: Subscription, plan: SubscriptionPlan) -> None:
        sub.plan_id = plan.id
        sub.limits_snapshot = dict(plan.limits or {})

    @staticmethod
    def _start_period(sub: Subscription, start: datetime, plan: SubscriptionPlan) -> None:
        sub.current_period_start = start
        sub.current_period_end = calculate_period_end(start, plan.cycle)
        sub.end_date = sub.current_period_end
        if sub.start_date > start:
            sub.start_date = start

    async def _charge(
        self,
        sub: Subscription,
        amount: Decimal,
        currency: str,
        payment_method: Optional[str],
        metadata: Dict[str, Any],
    ) -> ChargeResult:
        """One-time charge; any failure halts the calling operation with GatewayError."""
        adapter = self.gateways.get(sub.provider)
        result = await adapter.charge_one_time(
            amount,
            currency,
            payment_method,
            metadata,
            email=sub.customer_email,
        )
        if not result.success:
            logger.warning(
                "gateway_charge_declined",
                subscription_id=str(sub.id),
                provider=sub.provider,
                kind=metadata.get("type"),
                error=result.error,
            )
            raise GatewayError(result.error or "Charge declined", provider=sub.provider)
        return result

    async def _cancel_remote(self, sub: Subscription) -> bool:
        """Best effort: a failed remote cancel is logged and never blocks local cancellation."""
        if not sub.gateway_subscription_id:
            return True
        try:
            result = await self.gateways.get(sub.provider).cancel_subscription(sub.gateway_subscription_id)
        except (GatewayError, ConfigurationError) as e:
            logger.warning("gateway_cancel_failed", subscription_id=str(sub.id), provider=sub.provider, error=e.message)
            return False
        if not result.success:
            logger.warning("gateway_cancel_failed", subscription_id=str(sub.id), provider=sub.provider, error=result.error)
        return result.success

    async def _finish_invoice(self, invoice: Invoice, created: bool) -> None:
        if created:
            await self.invoices.attach_document(invoice)

    async def _record_unapplied_charge(
        self,
        subscription_id: UUID,
        provider: str,
        charge: ChargeResult,
        amount: Decimal,
        currency: str,
        kind: str,
        reason: str,
    ) -> Optional[Invoice]:
        """
        The subscription changed while a charge was in flight. Captured money is
        kept on an invoice flagged `unapplied` so it can be refunded or applied by hand.
        """
        UNAPPLIED_CHARGES.labels(provider=provider, kind=kind).inc()
        logger.error(
            "charge_unapplied",
            subscription_id=str(subscription_id),
            provider=provider,
            transaction_id=charge.transaction_id,
            amount=str(amount),
            kind=kind,
            reason=reason,
        )
        # Hosted checkout: nothing captured yet
        if not charge.transaction_id or charge.checkout_url:
            return None

        async with self._locked(subscription_id) as locked:
            invoice, created = await self.invoices.record_charge(
                locked,
                amount,
                gateway_charge_id=charge.transaction_id,
                description=f"Unapplied {kind.replace('_', ' ')} charge",
                kind=kind,
                currency=currency,
                metadata={"unapplied": True, "reason": reason},
                now=self.clock(),
            )

        await self._finish_invoice(invoice, created)
        await self._notify(NotificationKind.CHARGE_UNAPPLIED, locked, amount=invoice.total, reason=reason, invoice=invoice)
        return invoice

    # ------------------------------------------------------------------
    # commands
    # ------------------------------------------------------------------

    async def create_subscription(
        self,
        tenant_id: UUID,
        plan_id: str,
        provider: PaymentProvider | str,
        customer_email: Optional[str] = None,
        payment_method: Optional[str] = None,
    ) -> Subscription:
        """
        Creates a pending subscription and registers it with the provider.

        Active immediately when a stored payment method is supplied or the provider
        reports the subscription active; otherwise activation arrives by webhook.
        Any other non-terminal subscription of the tenant is cancelled first.
        """
        provider = PaymentProvider(provider)
        plan = await self._get_plan(plan_id)
        if not plan.is_active:
            raise InvalidTransitionError(f"Plan {plan.id} is not currently available")
        adapter = self.gateways.get(provider)

        await self._supersede_existing(tenant_id)

        now = self.clock()
        period_end = calculate_period_end(now, plan.cycle)
        sub = Subscription(
            tenant_id=tenant_id,
            plan_id=plan.id,
            customer_email=customer_email,
            status=S.PENDING.value,
            provider=provider.value,
            start_date=now,
            end_date=period_end,
            current_period_start=now,
            current_period_end=period_end,
            auto_renew=True,
            renewal_attempts=0,
            reminders_sent=[],
            limits_snapshot=dict(plan.limits or {}),
            quota_warnings={},
        )
        self.db.add(sub)
        await self.db.commit()
        logger.info("subscription_created", subscription_id=str(sub.id), tenant_id=str(tenant_id), plan_id=plan.id, provider=provider.value)

        try:
            result = await adapter.create_subscription(
                tenant_id,
                plan,
                Decimal(plan.price),
                plan.cycle,
                customer_email,
                payment_method=payment_method,
                metadata={"subscription_id": str(sub.id)},
            )
        except GatewayError as e:
            result = GatewaySubscriptionResult(success=False, error=e.message)

        if not result.success:
            async with self._locked(sub.id) as locked:
                self._transition(locked, S.PAYMENT_FAILED, "initial charge failed")
            await self._notify(NotificationKind.PAYMENT_FAILED, locked, reason=result.error, plan=plan.name)
            raise GatewayError(result.error or "Subscription could not be created", provider=provider.value)

        activated = False
        async with self._locked(sub.id) as locked:
            locked.gateway_subscription_id = result.gateway_subscription_id or locked.gateway_subscription_id
            locked.gateway_customer_id = result.gateway_customer_id or locked.gateway_customer_id
            locked.checkout_url = result.checkout_url
            if (payment_method or result.status == S.ACTIVE) and locked.state == S.PENDING:
                activated = self._transition(locked, S.ACTIVE, "initial charge succeeded")
                if result.current_period_end and result.current_period_end > locked.current_period_start:
                    locked.current_period_end = result.current_period_end
                    locked.end_date = result.current_period_end

        if activated:
            await self._notify(
                NotificationKind.SUBSCRIPTION_ACTIVATED,
                locked,
                plan=plan.name,
                amount=plan.price,
                period_end=locked.current_period_end,
            )
        return locked

    async def _supersede_existing(self, tenant_id: UUID) -> None:
        result = await self.db.execute(
            select(Subscription.id).where(
                Subscription.tenant_id == tenant_id,
                Subscription.status.notin_([s.value for s in TERMINAL_STATUSES]),
            )
        )
        for previous_id in result.scalars().all():
            logger.info("subscription_superseded", subscription_id=str(previous_id), tenant_id=str(tenant_id))
            previous = await self.get_subscription(previous_id)
            await self._cancel_now(previous, "Superseded by a new subscription", notify=False)

    async def upgrade_plan(
        self,
        subscription_id: UUID,
        target_plan_id: str,
        payment_method: Optional[str] = None,
        tenant_id: Optional[UUID] = None,
    ) -> Subscription:
        """
        Moves to a more expensive plan mid-cycle.

        A zero prorated amount swaps the plan now. Otherwise the prorated amount is
        charged once and the swap waits for that charge to be confirmed.
        """
        sub = await self.get_subscription(subscription_id, tenant_id)
        current_plan = await self._get_plan(sub.plan_id)
        target = await self._get_plan(target_plan_id)
        self._check_upgrade(sub, current_plan, target)

        now = self.clock()
        quote = self.proration.quote(
            current_plan.price,
            target.price,
            sub.current_period_start,
            sub.current_period_end,
            now,
        )
        logger.info(
            "upgrade_prorated",
            subscription_id=str(sub.id),
            from_plan=current_plan.id,
            to_plan=target.id,
            amount=str(quote.amount),
            remaining_days=quote.remaining_days,
            total_period_days=quote.total_period_days,
        )
        await self._release_read()

        if quote.is_free:
            async with self._locked(sub.id) as locked:
                self._check_upgrade(locked, current_plan, target)
                self._swap_plan(locked, target)
                locked.plan_change = None
            await self._notify(
                NotificationKind.UPGRADE_COMPLETED,
                locked,
                from_plan=current_plan.name,
                to_plan=target.name,
                amount=quote.amount,
            )
            return locked

        charge = await self._charge(
            sub,
            quote.amount,
            current_plan.currency,
            payment_method,
            {
                "type": "upgrade_proration",
                "subscription_id": str(sub.id),
                "target_plan_id": target.id,
                "description": f"Prorated upgrade to {target.name}",
            },
        )

        # Rollback expires loaded rows; keep what the unapplied-charge path needs
        provider, currency = sub.provider, current_plan.currency
        try:
            async with self._locked(subscription_id) as locked:
                self._check_upgrade(locked, current_plan, target)
                locked.plan_change = PendingUpgrade(
                    target_plan_id=target.id,
                    prorated_amount=quote.amount,
                    initiated_at=now,
                    status=UpgradeStatus.PENDING_PAYMENT,
                    transaction_id=charge.transaction_id,
                )
                if charge.checkout_url:
                    locked.checkout_url = charge.checkout_url
        except InvalidTransitionError as e:
            await self._record_unapplied_charge(
                subscription_id, provider, charge, quote.amount, currency, "upgrade_proration", e.message,
            )
            raise

        await self._notify(
            NotificationKind.UPGRADE_PENDING_PAYMENT,
            locked,
            to_plan=target.name,
            amount=quote.amount,
            checkout_url=charge.checkout_url,
        )
        return locked

    def _check_upgrade(self, sub: Subscription, current_plan: SubscriptionPlan, target: SubscriptionPlan) -> None:
        if sub.state != S.ACTIVE:
            raise InvalidTransitionError(f"Only active subscriptions can change plans (current: {sub.status})")
        if sub.plan_id != current_plan.id:
            raise InvalidTransitionError("Subscription plan changed while the upgrade was in progress")
        if target.id == current_plan.id:
            raise InvalidTransitionError(f"Subscription is already on plan {target.id}")
        if not target.is_active:
            raise InvalidTransitionError(f"Plan {target.id} is not currently available")
        if Decimal(target.price) <= Decimal(current_plan.price):
            raise InvalidTransitionError(
                f"Upgrade requires a more expensive plan: {target.id} ({target.price}) "
                f"is not priced above {current_plan.id} ({current_plan.price})"
            )
        if sub.pending_upgrade is not None:
            raise InvalidTransitionError("An upgrade is already awaiting payment")

    async def confirm_upgrade(
        self,
        subscription_id: UUID,
        transaction_id: Optional[str] = None,
        gateway_charge_id: Optional[str] = None,
        tenant_id: Optional[UUID] = None,
    ) -> Subscription:
        """
        Applies a pending upgrade once its prorated charge is confirmed: plan,
        limits and invoice change together. Re-confirming is a no-op.
        """
        await self.get_subscription(subscription_id, tenant_id)
        now = self.clock()

        async with self._locked(subscription_id) as locked:
            pending = locked.pending_upgrade
            charge_ref = gateway_charge_id or transaction_id or (pending.transaction_id if pending else None)

            if pending is None:
                if charge_ref and await self.invoices.find_by_charge(locked.provider, charge_ref):
                    logger.info("upgrade_already_confirmed", subscription_id=str(subscription_id), charge_id=charge_ref)
                    return locked
                raise InvalidTransitionError("No upgrade is awaiting payment")
            if transaction_id and pending.transaction_id and transaction_id != pending.transaction_id:
                raise InvalidTransitionError("Charge does not match the pending upgrade")

            target = await self._get_plan(pending.target_plan_id)
            from_plan_id = locked.plan_id
            self._swap_plan(locked, target)
            locked.plan_change = None
            invoice, created = await self.invoices.record_charge(
                locked,
                pending.prorated_amount,
                gateway_charge_id=charge_ref or f"upgrade-{locked.id}-{int(pending.initiated_at.timestamp())}",
                description=f"Prorated upgrade from {from_plan_id} to {target.id}",
                kind="upgrade_proration",
                currency=target.currency,
                metadata={"from_plan_id": from_plan_id, "to_plan_id": target.id},
                now=now,
            )

        await self._finish_invoice(invoice, created)
        await self._notify(
            NotificationKind.UPGRADE_COMPLETED,
            locked,
            to_plan=target.name,
            amount=pending.prorated_amount,
            invoice=invoice,
        )
        await self._notify(NotificationKind.PAYMENT_SUCCEEDED, locked, amount=invoice.total, invoice=invoice)
        return locked

    async def abandon_upgrade(self, subscription_id: UUID, reason: Optional[str] = None) -> bool:
        """Drops a pending upgrade whose prorated charge failed; the current plan stays."""
        async with self._locked(subscription_id) as locked:
            pending = locked.pending_upgrade
            if pending is None:
                return False
            locked.plan_change = None
        logger.info("upgrade_abandoned", subscription_id=str(subscription_id), reason=reason)
        await self._notify(NotificationKind.PAYMENT_FAILED, locked, reason=reason, amount=pending.prorated_amount)
        return True

    async def downgrade_plan(
        self,
        subscription_id: UUID,
        target_plan_id: str,
        tenant_id: Optional[UUID] = None,
    ) -> Subscription:
        """Schedules a move to a cheaper plan at the end of the current period."""
        sub = await self.get_subscription(subscription_id, tenant_id)
        current_plan = await self._get_plan(sub.plan_id)
        target = await self._get_plan(target_plan_id)
        self._check_downgrade(sub, current_plan, target)

        usage = await self.usage.get_usage(sub.tenant_id)
        violations = find_limit_violations(usage, target.plan_limits)
        if violations:
            logger.info("downgrade_blocked_by_usage", subscription_id=str(sub.id), violations=violations)
            raise QuotaExceededError(
                "Cannot downgrade: current usage exceeds new plan limits. " + "; ".join(violations),
                violations,
            )

        async with self._locked(sub.id) as locked:
            self._check_downgrade(locked, current_plan, target)
            locked.plan_change = ScheduledDowngrade(
                target_plan_id=target.id,
                effective_at=locked.current_period_end,
            )

        await self._notify(
            NotificationKind.DOWNGRADE_SCHEDULED,
            locked,
            to_plan=target.name,
            effective_at=locked.current_period_end,
        )
        return locked

    def _check_downgrade(self, sub: Subscription, current_plan: SubscriptionPlan, target: SubscriptionPlan) -> None:
        if sub.state != S.ACTIVE:
            raise InvalidTransitionError(f"Only active subscriptions can change plans (current: {sub.status})")
        if sub.plan_id != current_plan.id:
            raise InvalidTransitionError("Subscription plan changed while the downgrade was in progress")
        if target.id == current_plan.id:
            raise InvalidTransitionError(f"Subscription is already on plan {target.id}")
        if not target.is_active:
            raise InvalidTransitionError(f"Plan {target.id} is not currently available")
        if Decimal(target.price) >= Decimal(current_plan.price):
            raise InvalidTransitionError(
                f"Downgrade requires a cheaper plan: {target.id} ({target.price}) "
                f"is not priced below {current_plan.id} ({current_plan.price})"
            )
        if sub.pending_upgrade is not None:
            raise InvalidTransitionError("An upgrade is awaiting payment; downgrade after it settles")
        if sub.cancel_at_period_end:
            raise InvalidTransitionError("Subscription is set to cancel at the end of the period")

    async def cancel_subscription(
        self,
        subscription_id: UUID,
        reason: Optional[str] = None,
        immediate: bool = False,
        tenant_id: Optional[UUID] = None,
    ) -> Subscription:
        sub = await self.get_subscription(subscription_id, tenant_id)
        if sub.is_terminal:
            raise InvalidTransitionError(f"Subscription is already {sub.status}")

        if immediate:
            return await self._cancel_now(sub, reason, notify=True)

        if sub.state not in (S.ACTIVE, S.PAST_DUE):
            raise InvalidTransitionError(
                f"Only active or past-due subscriptions can be cancelled at period end (current: {sub.status})"
            )

        now = self.clock()
        async with self._locked(sub.id) as locked:
            if locked.is_terminal:
                raise InvalidTransitionError(f"Subscription is already {locked.status}")
            locked.cancellation = Cancellation(reason=reason, immediate=False, at_period_end=True, requested_at=now)
            # A pending plan change would never take effect
            if locked.scheduled_downgrade is not None:
                locked.plan_change = None

        logger.info("subscription_cancellation_scheduled", subscription_id=str(sub.id), effective_at=locked.current_period_end.isoformat())
        await self._notify(
            NotificationKind.CANCELLATION_SCHEDULED,
            locked,
            effective_at=locked.current_period_end,
            reason=reason,
        )
        return locked

    async def _cancel_now(self, sub: Subscription, reason: Optional[str], notify: bool) -> Subscription:
        await self._release_read()
        await self._cancel_remote(sub)

        now = self.clock()
        async with self._locked(sub.id) as locked:
            if locked.is_terminal:
                return locked
            self._transition(locked, S.CANCELLED, reason or "cancelled")
            locked.cancellation = Cancellation(reason=reason, immediate=True, at_period_end=False, requested_at=now)
            locked.cancelled_at = now
            locked.plan_change = None
            locked.auto_renew = False

        if notify:
            await self._notify(NotificationKind.SUBSCRIPTION_CANCELLED, locked, reason=reason)
        return locked

    async def reactivate_subscription(
        self,
        subscription_id: UUID,
        payment_method: Optional[str] = None,
        tenant_id: Optional[UUID] = None,
    ) -> Subscription:
        """
        Settles the outstanding balance of a suspended subscription and starts a
        fresh period from now. Hosted-checkout charges finish via webhook.
        """
        sub = await self.get_subscription(subscription_id, tenant_id)
        if sub.state != S.SUSPENDED:
            raise InvalidTransitionError(f"Only suspended subscriptions can be reactivated (current: {sub.status})")
        plan = await self._get_plan(sub.plan_id)
        await self._release_read()

        charge = await self._charge(
            sub,
            Decimal(plan.price),
            plan.currency,
            payment_method,
            {
                "type": "reactivation",
                "subscription_id": str(sub.id),
                "description": f"Outstanding balance for {plan.name}",
            },
        )

        if charge.checkout_url and not payment_method:
            async with self._locked(sub.id) as locked:
                locked.checkout_url = charge.checkout_url
            logger.info("reactivation_awaiting_checkout", subscription_id=str(sub.id))
            return locked

        # Rollback expires loaded rows; keep what the unapplied-charge path needs
        price, currency, provider = Decimal(plan.price), plan.currency, sub.provider
        now = self.clock()
        try:
            async with self._locked(subscription_id) as locked:
                if locked.state != S.SUSPENDED:
                    raise InvalidTransitionError(
                        f"Only suspended subscriptions can be reactivated (current: {locked.status})"
                    )
                self._reset_after_payment(locked, now, plan)
                self._transition(locked, S.ACTIVE, "reactivation payment succeeded")
                invoice, created = await self.invoices.record_charge(
                    locked,
                    Decimal(plan.price),
                    gateway_charge_id=charge.transaction_id or f"reactivation-{locked.id}-{int(now.timestamp())}",
                    description=f"{plan.name} reactivation",
                    kind="reactivation",
                    currency=plan.currency,
                    now=now,
                )
        except InvalidTransitionError as e:
            await self._record_unapplied_charge(
                subscription_id, provider, charge, price, currency, "reactivation", e.message,
            )
            raise

        await self._finish_invoice(invoice, created)
        await self._notify(
            NotificationKind.SUBSCRIPTION_REACTIVATED,
            locked,
            amount=invoice.total,
            period_end=locked.current_period_end,
            invoice=invoice,
        )
        return locked

    def _reset_after_payment(self, sub: Subscription, now: datetime, plan: SubscriptionPlan) -> None:
        sub.renewal_attempts = 0
        sub.last_renewal_attempt = None
        sub.grace_period_end = None
        sub.auto_renew = True
        sub.reminders_sent = []
        self._start_period(sub, now, plan)

    async def apply_coupon(self, subscription_id: UUID, code: str, tenant_id: Optional[UUID] = None) -> Subscription:
        """Records a discount. Charges and issued invoices are not adjusted."""
        sub = await self.get_subscription(subscription_id, tenant_id)
        if sub.is_terminal:
            raise InvalidTransitionError(f"Cannot apply a coupon to a {sub.status} subscription")
        coupon = find_coupon(code)
        if coupon is None:
            raise InvalidCouponError(f"Invalid coupon code: {code}")

        async with self._locked(sub.id) as locked:
            locked.discount = AppliedDiscount(
                code=coupon.code,
                discount_type=coupon.discount_type,
                value=coupon.value,
                applied_at=self.clock(),
            )
        logger.info("coupon_applied", subscription_id=str(sub.id), code=coupon.code)
        return locked

    async def sync_status(self, subscription_id: UUID, tenant_id: Optional[UUID] = None) -> Subscription:
        """Pulls the provider's view of the subscription and applies it where allowed."""
        sub = await self.get_subscription(subscription_id, tenant_id)
        if not sub.gateway_subscription_id:
            raise InvalidTransitionError("Subscription is not linked to a gateway subscription yet")
        await self._release_read()

        remote = await self.gateways.get(sub.provider).get_status(sub.gateway_subscription_id)
        logger.info("subscription_status_synced", subscription_id=str(sub.id), remote_status=remote.raw_status)
        return await self.apply_remote_status(sub.id, remote.status, remote.current_period_end)

    # ------------------------------------------------------------------
    # provider-originated changes (reconciliation)
    # ------------------------------------------------------------------

    async def record_charge_success(
        self,
        subscription_id: UUID,
        *,
        charge_id: str,
        amount: Optional[Decimal] = None,
        period_end: Optional[datetime] = None,
        gateway_subscription_id: Optional[str] = None,
    ) -> tuple[Invoice, bool]:
        """
        Activates (or restores) the subscription for a confirmed charge and records
        its invoice at the plan's list price. A charge seen before returns the
        existing invoice and changes nothing.
        """
        now = self.clock()
        notices = []

        async with self._locked(subscription_id) as locked:
            existing = await self.invoices.find_by_charge(locked.provider, charge_id)
            if existing is not None:
                return existing, False

            plan = await self._get_plan(locked.plan_id)
            if gateway_subscription_id and not locked.gateway_subscription_id:
                locked.gateway_subscription_id = gateway_subscription_id

            state = locked.state
            if state in (S.PENDING, S.PAYMENT_FAILED):
                self._transition(locked, S.ACTIVE, "charge confirmed")
                # Period starts when the first charge lands
                locked.current_period_start = now
                locked.current_period_end = (
                    period_end if period_end and period_end > now else calculate_period_end(now, plan.cycle)
                )
                locked.end_date = locked.current_period_end
                notices.append(NotificationKind.SUBSCRIPTION_ACTIVATED)
            elif state == S.PAST_DUE:
                self._transition(locked, S.ACTIVE, "retry charge succeeded")
                locked.renewal_attempts = 0
                if period_end and period_end > locked.current_period_end:
                    locked.current_period_end = locked.end_date = period_end
            elif state == S.SUSPENDED:
                self._reset_after_payment(locked, now, plan)
                self._transition(locked, S.ACTIVE, "reactivation charge succeeded")
                notices.append(NotificationKind.SUBSCRIPTION_REACTIVATED)
            elif state == S.ACTIVE:
                if period_end and period_end > locked.current_period_end:
                    locked.current_period_end = locked.end_date = period_end
            else:
                logger.warning("charge_on_terminal_subscription", subscription_id=str(subscription_id), status=locked.status)

            invoice, created = await self.invoices.record_charge(
                locked,
                Decimal(plan.price),
                gateway_charge_id=charge_id,
                description=f"{plan.name} subscription ({plan.cycle.value})",
                kind="subscription",
                currency=plan.currency,
                metadata={"amount_charged": str(amount)} if amount is not None else None,
                now=now,
            )

        await self._finish_invoice(invoice, created)
        for kind in notices:
            await self._notify(kind, locked, plan=plan.name, period_end=locked.current_period_end)
        await self._notify(NotificationKind.PAYMENT_SUCCEEDED, locked, amount=invoice.total, invoice=invoice)
        return invoice, created

    async def record_charge_failure(self, subscription_id: UUID, reason: Optional[str] = None) -> bool:
        async with self._locked(subscription_id) as locked:
            if locked.state == S.PENDING:
                changed = self._transition(locked, S.PAYMENT_FAILED, reason or "initial charge declined")
            elif locked.state == S.ACTIVE:
                changed = self._transition(locked, S.PAST_DUE, reason or "charge failed")
            else:
                changed = False

        if changed:
            await self._notify(NotificationKind.PAYMENT_FAILED, locked, reason=reason)
        return changed

    async def apply_remote_status(
        self,
        subscription_id: UUID,
        status: Optional[SubscriptionStatus],
        period_end: Optional[datetime] = None,
    ) -> Subscription:
        changed = False
        now = self.clock()
        async with self._locked(subscription_id) as locked:
            previous = locked.state
            if status is not None and status != previous:
                if can_transition(previous, status):
                    changed = self._transition(locked, status, "provider status")
                    if status == S.ACTIVE:
                        locked.renewal_attempts = 0
                    elif status == S.CANCELLED:
                        locked.cancelled_at = now
                        locked.plan_change = None
                        locked.auto_renew = False
                else:
                    logger.info(
                        "remote_status_not_applicable",
                        subscription_id=str(subscription_id),
                        local_status=previous.value,
                        remote_status=status.value,
                    )
            if period_end and not locked.is_terminal and period_end > locked.current_period_end:
                locked.current_period_end = locked.end_date = period_end

        if changed:
            kind = {
                S.ACTIVE: NotificationKind.SUBSCRIPTION_ACTIVATED,
                S.PAST_DUE: NotificationKind.PAYMENT_FAILED,
                S.SUSPENDED: NotificationKind.SUBSCRIPTION_SUSPENDED,
                S.CANCELLED: NotificationKind.SUBSCRIPTION_CANCELLED,
                S.EXPIRED: NotificationKind.SUBSCRIPTION_EXPIRED,
            }.get(locked.state)
            if kind:
                await self._notify(kind, locked)
        return locked

    async def apply_remote_cancellation(self, subscription_id: UUID) -> bool:
        """The provider ended the subscription; terminalize locally without calling back."""
        now = self.clock()
        async with self._locked(subscription_id) as locked:
            if locked.is_terminal:
                return False
            self._transition(locked, S.CANCELLED, "cancelled at provider")
            locked.cancellation = Cancellation(
                reason="Cancelled at payment provider",
                immediate=True,
                at_period_end=False,
                requested_at=now,
            )
            locked.cancelled_at = now
            locked.plan_change = None
            locked.auto_renew = False

        await self._notify(NotificationKind.SUBSCRIPTION_CANCELLED, locked, reason="Cancelled at payment provider")
        return True

    # ------------------------------------------------------------------
    # time-driven changes (renewal scheduler)
    # ------------------------------------------------------------------

    def renewal_due(self, sub: Subscription, now: datetime) -> bool:
        if sub.state not in (S.ACTIVE, S.PAST_DUE) or not sub.auto_renew:
            return False
        # Finalized by the rollover job instead
        if sub.cancel_at_period_end or sub.scheduled_downgrade is not None:
            return False
        if sub.current_period_end > now + timedelta(days=self.settings.RENEWAL_LOOKAHEAD_DAYS):
            return False
        min_interval = timedelta(hours=self.settings.RENEWAL_MIN_RETRY_INTERVAL_HOURS)
        if sub.last_renewal_attempt and now - sub.last_renewal_attempt < min_interval:
            return False
        return True

    async def attempt_renewal(self, subscription_id: UUID) -> RenewalOutcome:
        """One renewal check: an active provider status renews, anything else is a failed attempt."""
        now = self.clock()
        async with self._locked(subscription_id) as locked:
            if not self.renewal_due(locked, now):
                return RenewalOutcome.SKIPPED
            locked.last_renewal_attempt = now
            provider = locked.provider
            gateway_id = locked.gateway_subscription_id
            period_end = locked.current_period_end

        error = None
        remote = None
        if not gateway_id:
            error = "Subscription is not linked to a gateway subscription"
        else:
            try:
                remote = await self.gateways.get(provider).get_status(gateway_id)
            except (GatewayError, ConfigurationError) as e:
                error = e.message

        if remote is not None and remote.status == S.ACTIVE:
            return await self.record_renewal_success(subscription_id, expected_period_end=period_end)

        reason = error or f"Provider reports status '{remote.raw_status if remote else 'unknown'}'"
        return await self.record_renewal_failure(subscription_id, reason, expected_period_end=period_end)

    def _still_renewable(self, sub: Subscription, expected_period_end: Optional[datetime]) -> bool:
        """Re-check after gateway I/O; a cancel, suspension or reactivation may have landed meanwhile."""
        if sub.state not in (S.ACTIVE, S.PAST_DUE) or not sub.auto_renew:
            return False
        if sub.cancel_at_period_end or sub.scheduled_downgrade is not None:
            return False
        if expected_period_end is not None and sub.current_period_end != expected_period_end:
            return False
        return True

    def _log_discarded_renewal(self, sub: Subscription, result: str) -> None:
        logger.info(
            "renewal_outcome_discarded",
            subscription_id=str(sub.id),
            status=sub.status,
            result=result,
            cancel_at_period_end=sub.cancel_at_period_end,
        )

    async def record_renewal_success(
        self,
        subscription_id: UUID,
        expected_period_end: Optional[datetime] = None,
    ) -> RenewalOutcome:
        async with self._locked(subscription_id) as locked:
            if not self._still_renewable(locked, expected_period_end):
                self._log_discarded_renewal(locked, "renewed")
                return RenewalOutcome.SKIPPED
            plan = await self._get_plan(locked.plan_id)
            previous_end = locked.current_period_end
            locked.current_period_start = previous_end
            locked.current_period_end = calculate_period_end(previous_end, plan.cycle)
            locked.end_date = locked.current_period_end
            if locked.state == S.PAST_DUE:
                self._transition(locked, S.ACTIVE, "renewal succeeded")
            locked.renewal_attempts = 0
            locked.grace_period_end = None
            locked.reminders_sent = []

        logger.info("subscription_renewed", subscription_id=str(subscription_id), period_end=locked.current_period_end.isoformat())
        await self._notify(
            NotificationKind.RENEWAL_SUCCEEDED,
            locked,
            plan=plan.name,
            amount=plan.price,
            period_end=locked.current_period_end,
        )
        return RenewalOutcome.RENEWED

    async def record_renewal_failure(
        self,
        subscription_id: UUID,
        reason: str,
        expected_period_end: Optional[datetime] = None,
    ) -> RenewalOutcome:
        """
        Counts a failed renewal. Reaching RENEWAL_MAX_ATTEMPTS opens the grace
        period once; later failures inside the grace period stay quiet.
        """
        now = self.clock()
        max_attempts = self.settings.RENEWAL_MAX_ATTEMPTS

        async with self._locked(subscription_id) as locked:
            if not self._still_renewable(locked, expected_period_end):
                self._log_discarded_renewal(locked, "failed")
                return RenewalOutcome.SKIPPED
            locked.renewal_attempts = (locked.renewal_attempts or 0) + 1
            attempts = locked.renewal_attempts
            if locked.state == S.ACTIVE:
                self._transition(locked, S.PAST_DUE, "renewal failed")

            outcome = RenewalOutcome.FAILED
            if attempts >= max_attempts and locked.grace_period_end is None:
                locked.grace_period_end = now + timedelta(days=self.settings.GRACE_PERIOD_DAYS)
                outcome = RenewalOutcome.GRACE_STARTED

        logger.warning(
            "subscription_renewal_failed",
            subscription_id=str(subscription_id),
            attempt=attempts,
            max_attempts=max_attempts,
            reason=reason,
            grace_period_end=locked.grace_period_end.isoformat() if locked.grace_period_end else None,
        )

        if outcome == RenewalOutcome.GRACE_STARTED:
            await self._notify(
                NotificationKind.GRACE_PERIOD_STARTED,
                locked,
                attempts=attempts,
                grace_period_end=locked.grace_period_end,
            )
        elif attempts < max_attempts:
            await self._notify(
                NotificationKind.RENEWAL_FAILED,
                locked,
                attempt=attempts,
                max_attempts=max_attempts,
                next_retry_at=now + timedelta(days=1),
                reason=reason,
            )
        return outcome

    async def record_reminder(self, subscription_id: UUID, thresholds: Optional[list[int]] = None) -> Optional[int]:
        """
        Sends the renewal reminder for the tightest threshold reached and not yet
        sent. Wider thresholds are marked as covered. Returns the days sent, if any.
        """
        thresholds = sorted(thresholds or self.settings.RENEWAL_REMINDER_DAYS)
        now = self.clock()

        async with self._locked(subscription_id) as locked:
            if locked.state != S.ACTIVE or not locked.auto_renew or locked.cancel_at_period_end:
                return None
            days_left = (locked.current_period_end.date() - now.date()).days
            if days_left <= 0:
                return None
            due = [t for t in thresholds if days_left <= t and not locked.reminder_sent(t)]
            if not due:
                return None
            threshold = min(due)
            locked.mark_reminders_sent(*[t for t in thresholds if t >= threshold])

        plan = await self._get_plan(locked.plan_id)
        await self._notify(
            NotificationKind.RENEWAL_REMINDER,
            locked,
            days=threshold,
            renewal_date=locked.current_period_end,
            amount=plan.price,
        )
        return threshold

    async def expire_grace_period(self, subscription_id: UUID) -> bool:
        now = self.clock()
        async with self._locked(subscription_id) as locked:
            if locked.state != S.PAST_DUE or locked.grace_period_end is None:
                return False
            if locked.grace_period_end >= now:
                return False
            self._transition(locked, S.SUSPENDED, "grace period expired")

        await self._notify(NotificationKind.SUBSCRIPTION_SUSPENDED, locked)
        return True

    async def roll_over_period(self, subscription_id: UUID) -> RolloverOutcome:
        """
        Finalizes a lapsed period: cancel-at-period-end first, then a scheduled
        downgrade, then expiry when auto-renew is off.
        """
        now = self.clock()
        target = None
        async with self._locked(subscription_id) as locked:
            if locked.is_terminal or locked.current_period_end > now:
                return RolloverOutcome.UNCHANGED

            downgrade = locked.scheduled_downgrade
            if locked.cancel_at_period_end and locked.state in (S.ACTIVE, S.PAST_DUE):
                self._transition(locked, S.CANCELLED, "cancelled at period end")
                locked.cancelled_at = now
                locked.plan_change = None
                locked.auto_renew = False
                outcome = RolloverOutcome.CANCELLED
            elif downgrade is not None and locked.state == S.ACTIVE:
                target = await self._get_plan(downgrade.target_plan_id)
                previous_end = locked.current_period_end
                self._swap_plan(locked, target)
                locked.plan_change = None
                locked.quota_warnings = {}
                locked.current_period_start = previous_end
                locked.current_period_end = calculate_period_end(previous_end, target.cycle)
                locked.end_date = locked.current_period_end
                locked.renewal_attempts = 0
                locked.reminders_sent = []
                outcome = RolloverOutcome.DOWNGRADED
            elif not locked.auto_renew and locked.state == S.ACTIVE:
                self._transition(locked, S.EXPIRED, "period ended without renewal")
                outcome = RolloverOutcome.EXPIRED
            else:
                return RolloverOutcome.UNCHANGED

        if outcome == RolloverOutcome.CANCELLED:
            await self._cancel_remote(locked)
            await self._notify(NotificationKind.SUBSCRIPTION_CANCELLED, locked, reason=locked.cancellation_reason)
        elif outcome == RolloverOutcome.DOWNGRADED:
            await self._notify(
                NotificationKind.DOWNGRADE_APPLIED,
                locked,
                to_plan=target.name,
                period_end=locked.current_period_end,
            )
        else:
            await self._notify(NotificationKind.SUBSCRIPTION_EXPIRED, locked)
        return outcome
