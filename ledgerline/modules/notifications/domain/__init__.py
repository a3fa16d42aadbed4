from ledgerline.shared.core.config import get_settings
from .base import NotificationKind, NotificationSink, LoggingNotificationSink
from .email_service import EmailNotificationSink


def get_notification_sink() -> NotificationSink:
    """SMTP delivery when configured, otherwise notices are only logged."""
    settings = get_settings()
    if settings.SMTP_HOST and settings.SMTP_USER:
        return EmailNotificationSink(
            smtp_host=settings.SMTP_HOST,
            smtp_port=settings.SMTP_PORT,
            smtp_user=settings.SMTP_USER,
            smtp_password=settings.SMTP_PASSWORD or "",
            from_email=settings.SMTP_FROM,
            billing_url=f"{settings.FRONTEND_URL}/billing",
        )
    return LoggingNotificationSink()


__all__ = [
    "NotificationKind",
    "NotificationSink",
    "LoggingNotificationSink",
    "EmailNotificationSink",
    "get_notification_sink",
]
