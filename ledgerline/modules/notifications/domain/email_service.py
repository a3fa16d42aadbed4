"""
Email Notification Service

Sends subscription lifecycle notices via SMTP.
"""

import asyncio
import html
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict

import structlog

from ledgerline.models.subscription import Subscription
from ledgerline.modules.notifications.domain.base import NotificationKind

logger = structlog.get_logger()


def escape_html(text: Any) -> str:
    """Escape user-provided content to prevent HTML injection."""
    if text is None:
        return ""
    return html.escape(str(text))


SUBJECTS = {
    NotificationKind.SUBSCRIPTION_ACTIVATED: "Welcome! Your subscription is active",
    NotificationKind.PAYMENT_SUCCEEDED: "Payment received",
    NotificationKind.PAYMENT_FAILED: "Payment failed",
    NotificationKind.RENEWAL_SUCCEEDED: "Your subscription has been renewed",
    NotificationKind.RENEWAL_FAILED: "Renewal payment failed ({attempt}/{max_attempts})",
    NotificationKind.GRACE_PERIOD_STARTED: "Action required: your subscription is past due",
    NotificationKind.SUBSCRIPTION_SUSPENDED: "Your subscription has been suspended",
    NotificationKind.SUBSCRIPTION_REACTIVATED: "Your subscription has been reactivated",
    NotificationKind.RENEWAL_REMINDER: "Your subscription renews in {days} day(s)",
    NotificationKind.UPGRADE_PENDING_PAYMENT: "Complete your plan upgrade",
    NotificationKind.UPGRADE_COMPLETED: "Your plan has been upgraded",
    NotificationKind.DOWNGRADE_SCHEDULED: "Your plan change is scheduled",
    NotificationKind.DOWNGRADE_APPLIED: "Your plan has changed",
    NotificationKind.CANCELLATION_SCHEDULED: "Your subscription will end at the close of this period",
    NotificationKind.SUBSCRIPTION_CANCELLED: "Your subscription has been cancelled",
    NotificationKind.SUBSCRIPTION_EXPIRED: "Your subscription has expired",
    NotificationKind.CHARGE_UNAPPLIED: "We received a payment we could not apply",
}


class EmailNotificationSink:
    """
    Renders lifecycle notices as HTML email and sends them through SMTP.

    Delivery failures are logged and reported as False; they never propagate
    into the billing transition that triggered them.
    """

    def __init__(
        self,
        smtp_host: str,
        smtp_port: int,
        smtp_user: str,
        smtp_password: str,
        from_email: str,
        billing_url: str,
    ):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.from_email = from_email
        self.billing_url = billing_url

    async def notify(self, kind: NotificationKind, subscription: Subscription, **context: Any) -> bool:
        recipient = subscription.customer_email
        if not recipient:
            logger.warning("email_notification_skipped", kind=kind.value, reason="No recipient")
            return False

        try:
            subject = SUBJECTS[kind].format(**context)
        except KeyError:
            subject = SUBJECTS[kind].split("(")[0].strip()

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.from_email
        msg["To"] = recipient
        msg.attach(MIMEText(self._build_email_html(kind, subscription, context), "html"))

        try:
            await asyncio.to_thread(self._send, recipient, msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("billing_email_failed", kind=kind.value, subscription_id=str(subscription.id), error=str(e))
            return False

        logger.info("billing_email_sent", kind=kind.value, subscription_id=str(subscription.id))
        return True

    def _send(self, recipient: str, msg: MIMEMultipart) -> None:
        with smtplib.SMTP(self.smtp_host, self.smtp_port) as server:
            server.starttls()
            server.login(self.smtp_user, self.smtp_password)
            server.sendmail(self.from_email, [recipient], msg.as_string())

    def _build_email_html(self, kind: NotificationKind, subscription: Subscription, context: Dict[str, Any]) -> str:
        rows = "".join(
            f"<tr><td>{escape_html(key.replace('_', ' ').title())}</td><td><strong>{escape_html(value)}</strong></td></tr>"
            for key, value in context.items()
            if key != "invoice"
        )

        invoice_html = ""
        invoice = context.get("invoice")
        if invoice is not None:
            link = (
                f'<a href="{escape_html(invoice.document_url)}">Download invoice</a>'
                if invoice.document_url else ""
            )
            invoice_html = f"""
            <div class="metric">
                <h3>Invoice {escape_html(invoice.invoice_number)}</h3>
                <p>Total: <strong>{escape_html(invoice.currency)} {escape_html(invoice.total)}</strong></p>
                {link}
            </div>"""

        return f"""
<!DOCTYPE html>
<html>
<head>
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 20px; }}
        .header {{ background: #0f172a; color: white; padding: 20px; border-radius: 8px 8px 0 0; }}
        .content {{ background: #f8fafc; padding: 20px; border-radius: 0 0 8px 8px; }}
        .metric {{ background: white; padding: 15px; border-radius: 8px; margin: 10px 0; }}
        .cta {{ background: #2563eb; color: white; padding: 12px 24px; border-radius: 6px; text-decoration: none; display: inline-block; margin: 15px 0; }}
    </style>
</head>
<body>
    <div class="container">
        <div class="header">
            <h1>{escape_html(SUBJECTS[kind].split("(")[0].strip())}</h1>
        </div>
        <div class="content">
            <p>Plan: <strong>{escape_html(subscription.plan_id)}</strong></p>
            <table>{rows}</table>
            {invoice_html}
            <a href="{escape_html(self.billing_url)}" class="cta">Manage Billing</a>
            <p style="color: #64748b; font-size: 12px;">Sent by Ledgerline Billing</p>
        </div>
    </div>
</body>
</html>
"""
