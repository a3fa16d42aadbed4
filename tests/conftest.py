import os
# Test environment BEFORE any ledgerline imports
os.environ["DB_SSL_MODE"] = "disable"
os.environ["ENVIRONMENT"] = "development"
os.environ["TESTING"] = "True"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SCHEDULER_ENABLED"] = "False"
os.environ["SMTP_HOST"] = ""
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"

import json
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import AsyncGenerator, Any, Optional

import pytest
from fastapi import Depends
from httpx import AsyncClient, ASGITransport
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Ensure all models are registered in the metadata
from ledgerline.shared.db.base import Base
from ledgerline.models.pricing import SubscriptionPlan
from ledgerline.models.subscription import Subscription, SubscriptionStatus, PaymentProvider
from ledgerline.models.invoice import Invoice, ProcessedWebhookEvent  # noqa: F401
from ledgerline.modules.billing.adapters.base import (
    PaymentGatewayAdapter,
    GatewaySubscriptionResult,
    GatewayResult,
    ChargeResult,
    RemoteStatus,
    NormalizedEvent,
    WebhookVerification,
    WebhookEventKind,
)
from ledgerline.modules.billing.adapters.registry import GatewayRegistry
from ledgerline.modules.billing.domain.cycles import calculate_period_end
from ledgerline.modules.billing.domain.invoices import InvoiceRecorder
from ledgerline.modules.billing.domain.locks import SubscriptionLockRegistry
from ledgerline.modules.billing.domain.state_machine import SubscriptionStateMachine
from ledgerline.modules.billing.domain.usage import ResourceUsage
from ledgerline.shared.core.exceptions import GatewayError

START = datetime(2026, 4, 1, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock shared by the state machine and scheduler under test."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeGateway(PaymentGatewayAdapter):
    """
    In-memory gateway. Webhook payloads are JSON with the normalized fields and
    the signature "valid" passes verification.
    """
    provider = PaymentProvider.STRIPE

    def __init__(self):
        super().__init__(timeout=5)
        self.subscription_result = GatewaySubscriptionResult(
            success=True,
            gateway_subscription_id="sub_test_1",
            gateway_customer_id="cus_test_1",
        )
        self.charge_result = ChargeResult(success=True, transaction_id="pi_test_1")
        self.remote_status: Optional[SubscriptionStatus] = SubscriptionStatus.ACTIVE
        self.status_error: Optional[str] = None
        self.cancel_result = GatewayResult(success=True)
        self.created: list[dict] = []
        self.charges: list[dict] = []
        self.cancelled: list[str] = []
        self.status_calls = 0

    async def create_subscription(self, tenant_id, plan, amount, cycle, email, payment_method=None, metadata=None):
        self.created.append({"plan_id": plan.id, "amount": amount, "payment_method": payment_method, "metadata": metadata})
        return self.subscription_result

    async def cancel_subscription(self, gateway_subscription_id):
        self.cancelled.append(gateway_subscription_id)
        return self.cancel_result

    async def verify_webhook(self, payload, signature, secret, headers=None):
        if signature != "valid":
            return WebhookVerification(valid=False, error="Signature mismatch")
        body = json.loads(payload)
        return WebhookVerification(
            valid=True,
            event=NormalizedEvent(
                provider=self.provider,
                event_id=body["id"],
                event_type=body.get("type", "test.event"),
                kind=WebhookEventKind(body["kind"]),
                gateway_subscription_id=body.get("subscription"),
                charge_id=body.get("charge"),
                amount=Decimal(body["amount"]) if body.get("amount") else None,
                remote_status=SubscriptionStatus(body["status"]) if body.get("status") else None,
                metadata=body.get("metadata", {}),
            ),
        )

    async def get_status(self, gateway_subscription_id):
        self.status_calls += 1
        if self.status_error:
            raise GatewayError(self.status_error, provider=self.provider.value)
        raw = self.remote_status.value if self.remote_status else "incomplete"
        return RemoteStatus(status=self.remote_status, raw_status=raw)

    async def charge_one_time(self, amount, currency, payment_method, metadata, email=None):
        self.charges.append({"amount": amount, "currency": currency, "payment_method": payment_method, "metadata": metadata})
        return self.charge_result


class RecordingNotifier:
    def __init__(self):
        self.sent: list[tuple] = []

    async def notify(self, kind, subscription, **context: Any) -> bool:
        self.sent.append((kind, subscription.id, context))
        return True

    def count(self, kind) -> int:
        return sum(1 for sent_kind, _, _ in self.sent if sent_kind == kind)

    def last(self, kind) -> dict:
        return [context for sent_kind, _, context in self.sent if sent_kind == kind][-1]


class FakeUsage:
    def __init__(self, **counts):
        self.usage = ResourceUsage(**counts)

    async def get_usage(self, tenant_id):
        return self.usage


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_maker) -> AsyncGenerator[AsyncSession, None]:
    async with session_maker() as session:
        yield session


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def gateways(gateway) -> GatewayRegistry:
    return GatewayRegistry({PaymentProvider.STRIPE: gateway})


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def usage() -> FakeUsage:
    return FakeUsage()


@pytest.fixture
def machine_factory(gateways, notifier, usage, clock):
    """Builds a state machine bound to a given session with the shared fakes."""
    locks = SubscriptionLockRegistry()

    def build(session: AsyncSession) -> SubscriptionStateMachine:
        return SubscriptionStateMachine(
            session,
            gateways,
            notifier,
            invoices=InvoiceRecorder(session, tax_rate=0),
            usage=usage,
            locks=locks,
            clock=clock,
        )
    return build


@pytest.fixture
def machine(db, machine_factory) -> SubscriptionStateMachine:
    return machine_factory(db)


@pytest.fixture
async def plans(db) -> dict[str, SubscriptionPlan]:
    catalog = {
        "starter": SubscriptionPlan(
            id="starter", name="Starter", price=Decimal("49.00"), billing_cycle="monthly",
            limits={"max_users": 5, "max_contacts": 1000}, sort_order=1,
        ),
        "growth": SubscriptionPlan(
            id="growth", name="Growth", price=Decimal("149.00"), billing_cycle="monthly",
            limits={"max_users": 20, "max_contacts": 10000}, sort_order=2,
        ),
        "annual": SubscriptionPlan(
            id="annual", name="Growth Annual", price=Decimal("1490.00"), billing_cycle="annual",
            limits={"max_users": 20}, sort_order=3,
        ),
        "legacy": SubscriptionPlan(
            id="legacy", name="Legacy", price=Decimal("19.00"), billing_cycle="monthly",
            limits={}, is_active=False, sort_order=9,
        ),
    }
    db.add_all(catalog.values())
    await db.commit()
    return catalog


@pytest.fixture
def make_subscription(db, plans, clock):
    """Persists a subscription directly in the given state for the current clock."""
    async def make(
        plan_id: str = "starter",
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        period_start: Optional[datetime] = None,
        **overrides,
    ) -> Subscription:
        start = period_start or clock.now
        end = calculate_period_end(start, plans[plan_id].cycle)
        values = dict(
            tenant_id=overrides.pop("tenant_id", None) or uuid.uuid4(),
            plan_id=plan_id,
            customer_email="owner@example.com",
            status=status.value,
            provider=PaymentProvider.STRIPE.value,
            gateway_subscription_id="sub_test_1",
            start_date=start,
            end_date=end,
            current_period_start=start,
            current_period_end=end,
            auto_renew=True,
            renewal_attempts=0,
            reminders_sent=[],
            limits_snapshot=dict(plans[plan_id].limits),
            quota_warnings={},
        )
        values.update(overrides)
        sub = Subscription(**values)
        db.add(sub)
        await db.commit()
        return sub
    return make


@pytest.fixture
def reload(db):
    """Fresh copy of a subscription, bypassing the session identity map."""
    async def _reload(subscription_id) -> Subscription:
        result = await db.execute(
            select(Subscription)
            .where(Subscription.id == subscription_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()
    return _reload


@pytest.fixture
async def ac(session_maker, gateways, notifier, usage, clock) -> AsyncGenerator[AsyncClient, None]:
    """Async client against the app with the test database and fakes wired in."""
    from ledgerline.main import app
    from ledgerline.modules.billing.api.v1 import deps
    from ledgerline.shared.db.session import get_db

    async def override_db():
        async with session_maker() as session:
            yield session

    def override_machine(db: AsyncSession = Depends(get_db)):
        return SubscriptionStateMachine(
            db, gateways, notifier,
            invoices=InvoiceRecorder(db, tax_rate=0),
            usage=usage,
            clock=clock,
        )

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[deps.get_gateways] = lambda: gateways
    app.dependency_overrides[deps.get_state_machine] = override_machine

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
