"""
Error taxonomy for the login and second-factor flows.

Every error carries a stable machine-readable ``code``, a user-facing
``message`` and the HTTP status the API layer renders it with. Internal
causes are logged where they are caught and never placed in the message.
"""
from typing import Dict, Optional


class TwoFactorError(Exception):
    """Base class for user-visible authentication failures."""

    code = "AUTH_ERROR"
    message = "Authentication failed"
    status_code = 400

    def __init__(self, message: Optional[str] = None):
        if message is not None:
            self.message = message
        super().__init__(self.message)

    @property
    def headers(self) -> Optional[Dict[str, str]]:
        return None


class ThrottleExceeded(TwoFactorError):
    """Too many attempts; retryable after ``retry_after`` seconds."""

    code = "THROTTLED"
    status_code = 429

    def __init__(self, retry_after: int, scope: str = "account"):
        self.retry_after = retry_after
        self.scope = scope
        if scope == "origin":
            message = "Too many requests from this IP"
        else:
            message = "Too many login attempts for this account"
        super().__init__(message)

    @property
    def headers(self) -> Optional[Dict[str, str]]:
        return {"Retry-After": str(self.retry_after)}


class InvalidCredentials(TwoFactorError):
    code = "INVALID_CREDENTIALS"
    message = "Invalid email or password"
    status_code = 401


class InvalidCode(TwoFactorError):
    code = "INVALID_CODE"
    message = "invalid token"
    status_code = 400


class ConfigurationMissing(TwoFactorError):
    """Second-factor verification requested but no secret is enrolled."""

    code = "TOTP_NOT_CONFIGURED"
    message = "totp not configured"
    status_code = 400


class ChallengeExpired(TwoFactorError):
    """The login challenge is unknown, expired, or belongs to another user."""

    code = "CHALLENGE_EXPIRED"
    message = "Login challenge expired, please sign in again"
    status_code = 401


class LedgerUnavailable(TwoFactorError):
    code = "LEDGER_UNAVAILABLE"
    message = "Trusted device storage is unavailable"
    status_code = 503


class StoreUnavailable(TwoFactorError):
    """Credential or profile storage failed."""

    code = "STORE_UNAVAILABLE"
    message = "Service temporarily unavailable"
    status_code = 503
