import json
import uuid

import pytest
from httpx import AsyncClient

from ledgerline.models.subscription import SubscriptionStatus
from ledgerline.modules.billing.adapters.base import GatewaySubscriptionResult
from ledgerline.modules.billing.domain.usage import ResourceUsage

BASE = "/api/v1/billing"


def tenant_headers(tenant_id) -> dict:
    return {"X-Tenant-ID": str(tenant_id)}


@pytest.mark.asyncio
class TestPlansEndpoint:
    """Tests for /plans endpoint."""

    async def test_lists_active_plans_in_order(self, ac: AsyncClient, plans):
        response = await ac.get(f"{BASE}/plans")

        assert response.status_code == 200
        data = response.json()
        assert [p["id"] for p in data] == ["starter", "growth", "annual"]
        assert data[0]["price"] == "49.00"
        assert data[0]["limits"]["max_users"] == 5
        assert data[0]["features"] == {}
        assert data[2]["billing_cycle"] == "annual"


@pytest.mark.asyncio
class TestSubscriptionEndpoints:
    """Tests for /subscriptions endpoints."""

    async def test_requires_tenant_header(self, ac: AsyncClient, plans):
        response = await ac.post(f"{BASE}/subscriptions", json={"plan_id": "starter", "provider": "stripe"})
        assert response.status_code == 422

    async def test_create_with_payment_method(self, ac: AsyncClient, plans):
        tenant_id = uuid.uuid4()
        response = await ac.post(
            f"{BASE}/subscriptions",
            json={"plan_id": "starter", "provider": "stripe", "payment_method": "pm_card", "customer_email": "a@b.c"},
            headers=tenant_headers(tenant_id),
        )

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "active"
        assert data["tenant_id"] == str(tenant_id)
        assert data["gateway_subscription_id"] == "sub_test_1"
        assert data["limits"] == {"max_users": 5, "max_contacts": 1000}

    async def test_gateway_rejection_is_502(self, ac: AsyncClient, plans, gateway):
        gateway.subscription_result = GatewaySubscriptionResult(success=False, error="card_declined")

        response = await ac.post(
            f"{BASE}/subscriptions",
            json={"plan_id": "starter", "provider": "stripe", "payment_method": "pm_bad"},
            headers=tenant_headers(uuid.uuid4()),
        )

        assert response.status_code == 502
        assert response.json()["error"] == "gateway_error"

    async def test_unconfigured_provider_is_500(self, ac: AsyncClient, plans):
        response = await ac.post(
            f"{BASE}/subscriptions",
            json={"plan_id": "starter", "provider": "paystack"},
            headers=tenant_headers(uuid.uuid4()),
        )

        assert response.status_code == 500
        assert response.json()["error"] == "config_error"

    async def test_other_tenant_forbidden(self, ac: AsyncClient, make_subscription):
        sub = await make_subscription()

        response = await ac.get(f"{BASE}/subscriptions/{sub.id}", headers=tenant_headers(uuid.uuid4()))

        assert response.status_code == 403
        assert response.json()["error"] == "permission_denied"

    async def test_unknown_subscription_404(self, ac: AsyncClient, plans):
        response = await ac.get(f"{BASE}/subscriptions/{uuid.uuid4()}", headers=tenant_headers(uuid.uuid4()))
        assert response.status_code == 404

    async def test_upgrade_returns_pending_change(self, ac: AsyncClient, make_subscription, clock):
        sub = await make_subscription("starter")
        clock.advance(days=10)

        response = await ac.post(
            f"{BASE}/subscriptions/{sub.id}/upgrade",
            json={"plan_id": "growth", "payment_method": "pm_card"},
            headers=tenant_headers(sub.tenant_id),
        )

        assert response.status_code == 200
        data = response.json()
        assert data["plan_id"] == "starter"
        assert data["pending_upgrade"]["target_plan_id"] == "growth"
        assert data["pending_upgrade"]["prorated_amount"] == "66.67"

        confirmed = await ac.post(
            f"{BASE}/subscriptions/{sub.id}/upgrade/confirm",
            json={"transaction_id": "pi_test_1"},
            headers=tenant_headers(sub.tenant_id),
        )
        assert confirmed.json()["plan_id"] == "growth"
        assert confirmed.json()["pending_upgrade"] is None

    async def test_upgrade_to_cheaper_plan_is_409(self, ac: AsyncClient, make_subscription):
        sub = await make_subscription("growth")

        response = await ac.post(
            f"{BASE}/subscriptions/{sub.id}/upgrade",
            json={"plan_id": "starter"},
            headers=tenant_headers(sub.tenant_id),
        )

        assert response.status_code == 409
        assert response.json()["error"] == "invalid_transition"

    async def test_downgrade_over_quota_is_422(self, ac: AsyncClient, make_subscription, usage):
        usage.usage = ResourceUsage(users=6)
        sub = await make_subscription("growth")

        response = await ac.post(
            f"{BASE}/subscriptions/{sub.id}/downgrade",
            json={"plan_id": "starter"},
            headers=tenant_headers(sub.tenant_id),
        )

        assert response.status_code == 422
        body = response.json()
        assert body["error"] == "quota_exceeded"
        assert body["details"]["violations"] == ["Users: 6 exceeds limit of 5"]

    async def test_cancel_at_period_end(self, ac: AsyncClient, make_subscription):
        sub = await make_subscription()

        response = await ac.post(
            f"{BASE}/subscriptions/{sub.id}/cancel",
            json={"reason": "too expensive"},
            headers=tenant_headers(sub.tenant_id),
        )

        data = response.json()
        assert data["status"] == "active"
        assert data["cancellation"]["at_period_end"] is True
        assert data["cancellation"]["reason"] == "too expensive"

    async def test_reactivate_active_subscription_is_409(self, ac: AsyncClient, make_subscription):
        sub = await make_subscription()

        response = await ac.post(
            f"{BASE}/subscriptions/{sub.id}/reactivate",
            json={},
            headers=tenant_headers(sub.tenant_id),
        )

        assert response.status_code == 409

    async def test_coupon(self, ac: AsyncClient, make_subscription):
        sub = await make_subscription()

        ok = await ac.post(f"{BASE}/subscriptions/{sub.id}/coupon", json={"code": "save20"}, headers=tenant_headers(sub.tenant_id))
        bad = await ac.post(f"{BASE}/subscriptions/{sub.id}/coupon", json={"code": "NOPE"}, headers=tenant_headers(sub.tenant_id))

        assert ok.json()["discount"] == {"code": "SAVE20", "type": "percentage", "value": "20"}
        assert bad.status_code == 400
        assert bad.json()["error"] == "invalid_coupon"


@pytest.mark.asyncio
class TestWebhookEndpoint:
    """Tests for /webhooks/{provider} endpoint."""

    async def test_signed_charge_records_invoice_once(self, ac: AsyncClient, make_subscription):
        sub = await make_subscription(status=SubscriptionStatus.PENDING)
        payload = json.dumps({
            "id": "evt_api_1",
            "kind": "charge_succeeded",
            "charge": "in_api_1",
            "metadata": {"subscription_id": str(sub.id)},
        })

        first = await ac.post(f"{BASE}/webhooks/stripe", content=payload, headers={"Stripe-Signature": "valid"})
        second = await ac.post(f"{BASE}/webhooks/stripe", content=payload, headers={"Stripe-Signature": "valid"})

        assert first.json() == {"received": True, "outcome": "processed", "event_id": "evt_api_1"}
        assert second.json()["outcome"] == "duplicate"

        invoices = await ac.get(f"{BASE}/subscriptions/{sub.id}/invoices", headers=tenant_headers(sub.tenant_id))
        assert len(invoices.json()) == 1
        assert invoices.json()[0]["total"] == "49.00"

        detail = await ac.get(f"{BASE}/subscriptions/{sub.id}", headers=tenant_headers(sub.tenant_id))
        assert detail.json()["status"] == "active"

    async def test_bad_signature_is_401(self, ac: AsyncClient, plans):
        response = await ac.post(
            f"{BASE}/webhooks/stripe",
            content=b'{"id": "evt_x", "kind": "ignored"}',
            headers={"Stripe-Signature": "forged"},
        )

        assert response.status_code == 401
        assert response.json()["error"] == "signature_invalid"

    async def test_missing_signature_is_401(self, ac: AsyncClient, plans):
        response = await ac.post(f"{BASE}/webhooks/stripe", content=b'{"id": "evt_x", "kind": "ignored"}')
        assert response.status_code == 401

    async def test_unknown_provider_is_404(self, ac: AsyncClient):
        response = await ac.post(f"{BASE}/webhooks/bitpay", content=b"{}")
        assert response.status_code == 404
