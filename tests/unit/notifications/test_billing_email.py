"""
Tests for EmailNotificationSink - SMTP lifecycle notices
"""
import smtplib
import uuid
from decimal import Decimal
from unittest.mock import patch

import pytest

from ledgerline.models.invoice import Invoice
from ledgerline.models.subscription import Subscription
from ledgerline.modules.notifications.domain import (
    EmailNotificationSink,
    LoggingNotificationSink,
    NotificationKind,
    get_notification_sink,
)
from ledgerline.modules.notifications.domain.email_service import escape_html


@pytest.fixture
def email_sink():
    return EmailNotificationSink(
        smtp_host="localhost",
        smtp_port=1025,
        smtp_user="user",
        smtp_password="password",
        from_email="billing@ledgerline.io",
        billing_url="https://app.ledgerline.io/billing",
    )


@pytest.fixture
def subscription():
    return Subscription(
        id=uuid.uuid4(),
        tenant_id=uuid.uuid4(),
        plan_id="starter",
        customer_email="owner@example.com",
        status="active",
        provider="stripe",
    )


def test_escape_html():
    assert escape_html("<script>") == "&lt;script&gt;"
    assert escape_html(None) == ""


@pytest.mark.asyncio
async def test_renewal_reminder_sent(email_sink, subscription):
    with patch("smtplib.SMTP") as mock_smtp_cls:
        mock_smtp = mock_smtp_cls.return_value.__enter__.return_value

        res = await email_sink.notify(NotificationKind.RENEWAL_REMINDER, subscription, days=3, amount=Decimal("49.00"))

        assert res is True
        mock_smtp.login.assert_called_once_with("user", "password")
        from_addr, to_addrs, message = mock_smtp.sendmail.call_args[0]
        assert to_addrs == ["owner@example.com"]
        assert "Subject: Your subscription renews in 3 day(s)" in message
        assert "49.00" in message


@pytest.mark.asyncio
async def test_context_is_escaped(email_sink, subscription):
    with patch("smtplib.SMTP") as mock_smtp_cls:
        mock_smtp = mock_smtp_cls.return_value.__enter__.return_value

        await email_sink.notify(NotificationKind.SUBSCRIPTION_CANCELLED, subscription, reason="<b>bye</b>")

        message = mock_smtp.sendmail.call_args[0][2]
        assert "&lt;b&gt;bye&lt;/b&gt;" in message
        assert "<b>bye</b>" not in message


@pytest.mark.asyncio
async def test_invoice_is_linked(email_sink, subscription):
    invoice = Invoice(
        invoice_number="INV-2026-1-ABC123",
        currency="USD",
        total=Decimal("66.67"),
        document_url="https://files.ledgerline.io/INV-2026-1-ABC123.pdf",
    )
    with patch("smtplib.SMTP") as mock_smtp_cls:
        mock_smtp = mock_smtp_cls.return_value.__enter__.return_value

        await email_sink.notify(NotificationKind.PAYMENT_SUCCEEDED, subscription, amount=invoice.total, invoice=invoice)

        message = mock_smtp.sendmail.call_args[0][2]
        assert "Invoice INV-2026-1-ABC123" in message
        assert "INV-2026-1-ABC123.pdf" in message


@pytest.mark.asyncio
async def test_subject_without_template_values(email_sink, subscription):
    with patch("smtplib.SMTP") as mock_smtp_cls:
        mock_smtp = mock_smtp_cls.return_value.__enter__.return_value

        await email_sink.notify(NotificationKind.RENEWAL_FAILED, subscription)

        assert "Subject: Renewal payment failed\n" in mock_smtp.sendmail.call_args[0][2]


@pytest.mark.asyncio
async def test_smtp_failure_returns_false(email_sink, subscription):
    with patch("smtplib.SMTP") as mock_smtp_cls:
        mock_smtp = mock_smtp_cls.return_value.__enter__.return_value
        mock_smtp.sendmail.side_effect = smtplib.SMTPException("smtp fail")

        res = await email_sink.notify(NotificationKind.PAYMENT_FAILED, subscription)

        assert res is False


@pytest.mark.asyncio
async def test_missing_recipient_skips_send(email_sink, subscription):
    subscription.customer_email = None
    with patch("smtplib.SMTP") as mock_smtp_cls:
        res = await email_sink.notify(NotificationKind.PAYMENT_FAILED, subscription)

        assert res is False
        mock_smtp_cls.assert_not_called()


@pytest.mark.asyncio
async def test_logging_sink_is_default_without_smtp(subscription):
    sink = get_notification_sink()

    assert isinstance(sink, LoggingNotificationSink)
    assert await sink.notify(NotificationKind.SUBSCRIPTION_EXPIRED, subscription, plan="Starter") is True


def test_email_sink_when_smtp_configured():
    with patch("ledgerline.modules.notifications.domain.get_settings") as m:
        m.return_value.SMTP_HOST = "smtp.example.com"
        m.return_value.SMTP_PORT = 587
        m.return_value.SMTP_USER = "billing"
        m.return_value.SMTP_PASSWORD = "secret"
        m.return_value.SMTP_FROM = "billing@example.com"
        m.return_value.FRONTEND_URL = "https://app.example.com"

        sink = get_notification_sink()

    assert isinstance(sink, EmailNotificationSink)
    assert sink.billing_url == "https://app.example.com/billing"
