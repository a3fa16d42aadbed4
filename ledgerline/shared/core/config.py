from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import model_validator
from typing import Optional


class Settings(BaseSettings):
    """
    Main configuration for Ledgerline.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """
    APP_NAME: str = "Ledgerline"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # local, development, staging, production
    TESTING: bool = False
    FRONTEND_URL: str = "http://localhost:5173"  # Used for checkout callbacks

    @model_validator(mode='after')
    def validate_billing_config(self) -> 'Settings':
        """Ensure critical production keys are present and valid."""
        if self.TESTING:
            return self

        if self.is_production:
            if not self.DATABASE_URL:
                raise ValueError("DATABASE_URL is required in production.")

            if self.DB_SSL_MODE not in ["require", "verify-ca", "verify-full"]:
                raise ValueError(
                    f"SECURITY ERROR: DB_SSL_MODE must be 'require', 'verify-ca', or 'verify-full' in production. Current: {self.DB_SSL_MODE}"
                )

            # A provider with an API key but no webhook secret would accept forged events
            missing = []
            if self.STRIPE_SECRET_KEY and not self.STRIPE_WEBHOOK_SECRET:
                missing.append("STRIPE_WEBHOOK_SECRET")
            if self.PAYPAL_CLIENT_ID and not self.PAYPAL_WEBHOOK_ID:
                missing.append("PAYPAL_WEBHOOK_ID")
            if self.RAZORPAY_KEY_ID and not self.RAZORPAY_WEBHOOK_SECRET:
                missing.append("RAZORPAY_WEBHOOK_SECRET")
            if missing:
                raise ValueError(f"SECURITY ERROR: webhook secrets missing in production: {', '.join(missing)}")

        return self

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./ledgerline.db"
    DB_SSL_MODE: str = "disable"  # Options: disable, require, verify-ca, verify-full
    DB_SSL_CA_CERT_PATH: Optional[str] = None
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10

    # Gateways
    GATEWAY_TIMEOUT_SECONDS: float = 30.0

    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300

    PAYPAL_CLIENT_ID: Optional[str] = None
    PAYPAL_CLIENT_SECRET: Optional[str] = None
    PAYPAL_WEBHOOK_ID: Optional[str] = None  # PayPal verifies against the webhook id
    PAYPAL_API_URL: str = "https://api-m.sandbox.paypal.com"

    RAZORPAY_KEY_ID: Optional[str] = None
    RAZORPAY_KEY_SECRET: Optional[str] = None
    RAZORPAY_WEBHOOK_SECRET: Optional[str] = None
    RAZORPAY_API_URL: str = "https://api.razorpay.com/v1"

    # Paystack signs webhooks with the secret key itself
    PAYSTACK_SECRET_KEY: Optional[str] = None
    PAYSTACK_API_URL: str = "https://api.paystack.co"

    # Renewal policy
    RENEWAL_LOOKAHEAD_DAYS: int = 1
    RENEWAL_MIN_RETRY_INTERVAL_HOURS: int = 23
    RENEWAL_MAX_ATTEMPTS: int = 3
    GRACE_PERIOD_DAYS: int = 7
    RENEWAL_REMINDER_DAYS: list[int] = [7, 3, 1]

    # Scheduler (UTC)
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_RENEWAL_HOUR: int = 2
    SCHEDULER_GRACE_EXPIRY_HOUR: int = 3
    SCHEDULER_REMINDER_HOUR: int = 10
    SCHEDULER_CONCURRENCY: int = 10

    # Invoices
    INVOICE_TAX_RATE: float = 0.0

    # Usage accounting: quota dimension -> table holding tenant-owned rows
    USAGE_TABLES: dict[str, str] = {
        "contacts": "contacts",
        "users": "users",
        "campaigns": "campaigns",
        "conversations": "conversations",
        "flows": "flows",
        "automations": "automations",
        "connections": "whatsapp_connections",
    }

    # SMTP Email (billing notifications)
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USER: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    SMTP_FROM: str = "billing@ledgerline.io"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True
    )

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    def webhook_secret_for(self, provider: str) -> Optional[str]:
        """Returns the verification secret configured for a provider's webhooks."""
        return {
            "stripe": self.STRIPE_WEBHOOK_SECRET,
            "paypal": self.PAYPAL_WEBHOOK_ID,
            "razorpay": self.RAZORPAY_WEBHOOK_SECRET,
            "paystack": self.PAYSTACK_SECRET_KEY,
        }.get(provider)


@lru_cache
def get_settings():
    """Returns a singleton instance of the application settings."""
    return Settings()
