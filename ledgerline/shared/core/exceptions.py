from typing import Optional, Dict, Any
import re


class LedgerlineException(Exception):
    """Base exception for all Ledgerline errors."""
    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}


class NotFoundError(LedgerlineException):
    """Raised when a subscription, plan or invoice does not exist."""
    def __init__(self, message: str, code: str = "not_found", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=404, details=details)


class InvalidTransitionError(LedgerlineException):
    """Raised when a lifecycle command is not allowed from the subscription's current state."""
    def __init__(self, message: str, code: str = "invalid_transition", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=409, details=details)


class QuotaExceededError(LedgerlineException):
    """Raised when current usage does not fit the limits of a target plan."""
    def __init__(self, message: str, violations: Optional[list[str]] = None):
        super().__init__(
            message,
            code="quota_exceeded",
            status_code=422,
            details={"violations": violations or []},
        )
        self.violations = violations or []


class InvalidCouponError(LedgerlineException):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="invalid_coupon", status_code=400, details=details)


class GatewayError(LedgerlineException):
    """
    Raised when a payment provider call fails or a charge is declined.
    Automatically sanitizes error messages to avoid leaking credentials.
    """
    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        code: str = "gateway_error",
        details: Optional[Dict[str, Any]] = None
    ):
        details = dict(details or {})
        if provider:
            details.setdefault("provider", provider)
        super().__init__(self._sanitize(message), code=code, status_code=502, details=details)
        self.provider = provider

    @staticmethod
    def _sanitize(msg: str) -> str:
        """Remove keys, bearer tokens and signatures from provider error strings."""
        msg = re.sub(r'(sk|rk|pk)_(live|test)_[A-Za-z0-9]+', '[REDACTED_KEY]', msg)
        msg = re.sub(r'(?i)bearer\s+[A-Za-z0-9._\-]+', 'Bearer [REDACTED]', msg)
        msg = re.sub(r'(?i)(secret|token|password|signature)=[^&\s]+', r'\1=[REDACTED]', msg)
        return msg


class SignatureInvalidError(LedgerlineException):
    """Raised when an inbound webhook fails authenticity verification."""
    def __init__(self, message: str = "Invalid webhook signature", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="signature_invalid", status_code=401, details=details)


class PermissionDeniedError(LedgerlineException):
    """Raised when a tenant acts on a subscription it does not own."""
    def __init__(self, message: str = "Subscription does not belong to this tenant", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="permission_denied", status_code=403, details=details)


class ConfigurationError(LedgerlineException):
    """Raised when application configuration is invalid or missing."""
    def __init__(self, message: str, code: str = "config_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=500, details=details)
