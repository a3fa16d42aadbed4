import pytest

from ledgerline.shared.core.config import Settings
from ledgerline.shared.core.exceptions import GatewayError, QuotaExceededError
from ledgerline.shared.core.logging import pii_redactor
from ledgerline.shared.db.session import build_connect_args

PRODUCTION = {
    "TESTING": False,
    "ENVIRONMENT": "production",
    "DATABASE_URL": "postgresql+asyncpg://ledgerline@db/ledgerline",
    "DB_SSL_MODE": "require",
}


def test_config_production_requires_ssl():
    """Production refuses an unencrypted database connection."""
    with pytest.raises(ValueError, match="DB_SSL_MODE must be"):
        Settings(**{**PRODUCTION, "DB_SSL_MODE": "disable"})


def test_config_production_requires_webhook_secrets():
    """A provider with API keys but no webhook secret would accept forged events."""
    with pytest.raises(ValueError, match="RAZORPAY_WEBHOOK_SECRET"):
        Settings(**PRODUCTION, RAZORPAY_KEY_ID="rzp_live_abc", RAZORPAY_KEY_SECRET="secret")


def test_config_production_valid():
    s = Settings(**PRODUCTION, STRIPE_SECRET_KEY="sk_live_abc", STRIPE_WEBHOOK_SECRET="whsec_abc")
    assert s.is_production is True
    assert s.webhook_secret_for("stripe") == "whsec_abc"


def test_config_dev_validation_passes():
    """Development is lenient about SSL and secrets."""
    s = Settings(TESTING=False, ENVIRONMENT="development", DB_SSL_MODE="disable", STRIPE_SECRET_KEY="sk_test_abc")
    assert s.is_production is False
    assert s.webhook_secret_for("paystack") is None


def test_paystack_webhooks_use_secret_key():
    s = Settings(PAYSTACK_SECRET_KEY="sk_test_ps")
    assert s.webhook_secret_for("paystack") == "sk_test_ps"


def test_connect_args_sqlite_has_no_ssl():
    assert build_connect_args(Settings(DATABASE_URL="sqlite+aiosqlite:///:memory:")) == {}


def test_connect_args_verify_full_requires_ca():
    s = Settings(DATABASE_URL="postgresql+asyncpg://db/ledgerline", DB_SSL_MODE="verify-full")
    with pytest.raises(ValueError, match="DB_SSL_CA_CERT_PATH"):
        build_connect_args(s)


def test_connect_args_rejects_unknown_mode():
    s = Settings(DATABASE_URL="postgresql+asyncpg://db/ledgerline", DB_SSL_MODE="sometimes")
    with pytest.raises(ValueError, match="Invalid DB_SSL_MODE"):
        build_connect_args(s)


def test_gateway_error_redacts_credentials():
    err = GatewayError("Stripe failed for sk_live_abc123 with Bearer tok.en-1 signature=deadbeef", provider="stripe")

    assert "sk_live_abc123" not in err.message
    assert "tok.en-1" not in err.message
    assert "deadbeef" not in err.message
    assert err.status_code == 502
    assert err.details == {"provider": "stripe"}


def test_quota_error_lists_violations():
    err = QuotaExceededError("Cannot downgrade", ["Users: 6 exceeds limit of 5"])
    assert err.status_code == 422
    assert err.details["violations"] == ["Users: 6 exceeds limit of 5"]


def test_log_redaction():
    event = {"event": "charge", "customer_email": "a@b.c", "metadata": {"payment_method": "pm_1", "plan": "starter"}}

    redacted = pii_redactor(None, "info", event)

    assert redacted["customer_email"] == "[REDACTED]"
    assert redacted["metadata"]["payment_method"] == "[REDACTED]"
    assert redacted["metadata"]["plan"] == "starter"
