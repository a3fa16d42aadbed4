"""
Webhook Reconciliation

Turns authenticated provider notifications into state-machine calls.

Flow:
1. Verify the signature against the raw body (nothing is parsed before this)
2. Skip events already recorded in processed_webhook_events
3. Resolve our subscription (metadata reference first, then gateway id)
4. Dispatch by normalized event kind
5. Record the event id so redeliveries are no-ops

The event is recorded only after processing succeeds, so a failure leaves it
eligible for the provider's redelivery. Invoice creation is keyed by charge id,
which keeps concurrent duplicate deliveries from double-invoicing.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerline.models.invoice import ProcessedWebhookEvent
from ledgerline.models.subscription import Subscription, PaymentProvider
from ledgerline.modules.billing.adapters.base import NormalizedEvent, WebhookEventKind
from ledgerline.modules.billing.adapters.registry import GatewayRegistry
from ledgerline.modules.billing.domain.state_machine import SubscriptionStateMachine
from ledgerline.shared.core.config import Settings, get_settings
from ledgerline.shared.core.exceptions import (
    ConfigurationError,
    InvalidTransitionError,
    SignatureInvalidError,
)
from ledgerline.shared.core.ops_metrics import WEBHOOKS_RECEIVED
from ledgerline.shared.db.base import utc_now

logger = structlog.get_logger()


class ReconciliationOutcome(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    UNMATCHED = "unmatched"
    REJECTED = "rejected"


@dataclass
class ReconciliationResult:
    outcome: ReconciliationOutcome
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    subscription_id: Optional[UUID] = None
    invoice_number: Optional[str] = None


class ReconciliationHandler:
    def __init__(
        self,
        db: AsyncSession,
        gateways: GatewayRegistry,
        state_machine: SubscriptionStateMachine,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.gateways = gateways
        self.state_machine = state_machine
        self.settings = settings or get_settings()

    async def handle(
        self,
        provider: PaymentProvider | str,
        payload: bytes,
        signature: Optional[str],
        headers: Optional[Mapping[str, str]] = None,
    ) -> ReconciliationResult:
        provider = PaymentProvider(provider)
        adapter = self.gateways.get(provider)
        secret = self.settings.webhook_secret_for(provider.value)
        if not secret:
            raise ConfigurationError(f"Webhook secret for {provider.value} is not configured")

        if not signature:
            WEBHOOKS_RECEIVED.labels(provider=provider.value, outcome="invalid_signature").inc()
            logger.warning("webhook_signature_missing", provider=provider.value)
            raise SignatureInvalidError("Missing webhook signature")

        verification = await adapter.verify_webhook(payload, signature, secret, headers)
        if not verification.valid or verification.event is None:
            WEBHOOKS_RECEIVED.labels(provider=provider.value, outcome="invalid_signature").inc()
            logger.warning("webhook_signature_invalid", provider=provider.value, error=verification.error)
            raise SignatureInvalidError()

        event = verification.event
        log = logger.bind(provider=provider.value, event_id=event.event_id, event_type=event.event_type)

        if await self._already_processed(provider, event.event_id):
            WEBHOOKS_RECEIVED.labels(provider=provider.value, outcome=ReconciliationOutcome.DUPLICATE.value).inc()
            log.info("webhook_duplicate_skipped")
            return ReconciliationResult(ReconciliationOutcome.DUPLICATE, event.event_id, event.event_type)

        result = ReconciliationResult(ReconciliationOutcome.IGNORED, event.event_id, event.event_type)
        if event.kind == WebhookEventKind.IGNORED:
            log.info("webhook_event_ignored")
        else:
            subscription_id = await self._resolve_subscription(provider, event)
            if subscription_id is None:
                log.warning("webhook_subscription_unmatched", gateway_subscription_id=event.gateway_subscription_id)
                result.outcome = ReconciliationOutcome.UNMATCHED
            else:
                result.subscription_id = subscription_id
                try:
                    await self._dispatch(event, subscription_id, result)
                    result.outcome = ReconciliationOutcome.PROCESSED
                except InvalidTransitionError as e:
                    # The event no longer applies (already confirmed, terminal subscription)
                    log.info("webhook_transition_rejected", subscription_id=str(subscription_id), reason=e.message)
                    result.outcome = ReconciliationOutcome.REJECTED

        if not await self._record_processed(provider, event, result.outcome):
            WEBHOOKS_RECEIVED.labels(provider=provider.value, outcome=ReconciliationOutcome.DUPLICATE.value).inc()
            log.info("webhook_duplicate_skipped", reason="concurrent_delivery")
            return ReconciliationResult(ReconciliationOutcome.DUPLICATE, event.event_id, event.event_type, result.subscription_id)

        WEBHOOKS_RECEIVED.labels(provider=provider.value, outcome=result.outcome.value).inc()
        log.info("webhook_processed", outcome=result.outcome.value, subscription_id=str(result.subscription_id) if result.subscription_id else None)
        return result

    async def _dispatch(self, event: NormalizedEvent, subscription_id: UUID, result: ReconciliationResult) -> None:
        charge_type = event.metadata.get("type")

        if event.kind == WebhookEventKind.CHARGE_SUCCEEDED:
            if charge_type == "upgrade_proration":
                await self.state_machine.confirm_upgrade(
                    subscription_id,
                    transaction_id=event.metadata.get("transaction_id"),
                    gateway_charge_id=event.charge_id,
                )
                return
            invoice, _ = await self.state_machine.record_charge_success(
                subscription_id,
                charge_id=event.charge_id or event.event_id,
                amount=event.amount,
                period_end=event.current_period_end,
                gateway_subscription_id=event.gateway_subscription_id,
            )
            result.invoice_number = invoice.invoice_number

        elif event.kind == WebhookEventKind.CHARGE_FAILED:
            if charge_type == "upgrade_proration":
                await self.state_machine.abandon_upgrade(subscription_id, reason=event.event_type)
            else:
                await self.state_machine.record_charge_failure(subscription_id, reason=event.event_type)

        elif event.kind == WebhookEventKind.SUBSCRIPTION_UPDATED:
            await self.state_machine.apply_remote_status(
                subscription_id,
                event.remote_status,
                event.current_period_end,
            )

        elif event.kind == WebhookEventKind.SUBSCRIPTION_CANCELLED:
            await self.state_machine.apply_remote_cancellation(subscription_id)

    async def _resolve_subscription(self, provider: PaymentProvider, event: NormalizedEvent) -> Optional[UUID]:
        ref = event.subscription_ref
        if ref:
            try:
                candidate = UUID(ref)
            except ValueError:
                logger.warning("webhook_subscription_ref_invalid", provider=provider.value, ref=ref)
            else:
                sub = await self.db.get(Subscription, candidate)
                if sub is not None and sub.provider == provider.value:
                    return sub.id

        if event.gateway_subscription_id:
            result = await self.db.execute(
                select(Subscription.id)
                .where(
                    Subscription.provider == provider.value,
                    Subscription.gateway_subscription_id == event.gateway_subscription_id,
                )
                .order_by(Subscription.created_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()
        return None

    async def _already_processed(self, provider: PaymentProvider, event_id: str) -> bool:
        result = await self.db.execute(
            select(ProcessedWebhookEvent.id).where(
                ProcessedWebhookEvent.provider == provider.value,
                ProcessedWebhookEvent.event_id == event_id,
            )
        )
        return result.scalar_one_or_none() is not None

    async def _record_processed(self, provider: PaymentProvider, event: NormalizedEvent, outcome: ReconciliationOutcome) -> bool:
        """False when a concurrent delivery recorded the event first."""
        self.db.add(
            ProcessedWebhookEvent(
                provider=provider.value,
                event_id=event.event_id,
                event_type=event.event_type,
                outcome=outcome.value,
                processed_at=utc_now(),
            )
        )
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            return False
        return True
