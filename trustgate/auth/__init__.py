"""
Authentication core for TRUSTGATE.

This package provides:
- Login throttle (per account and per network origin)
- TOTP engine (enrollment, QR codes, verification)
- Trusted device ledger
- The two-factor login orchestrator
"""
from .errors import (
    TwoFactorError,
    ThrottleExceeded,
    InvalidCredentials,
    InvalidCode,
    ConfigurationMissing,
    ChallengeExpired,
    LedgerUnavailable,
    StoreUnavailable,
)
from .mfa import (
    generate_totp_secret,
    get_totp_provisioning_uri,
    verify_totp,
    setup_mfa,
    generate_qr_code_base64,
)
from .throttle import LoginThrottle, MemoryCounterStore, RedisCounterStore
from .devices import DeviceTrustLedger
from .orchestrator import LoginState, TwoFactorOrchestrator

__all__ = [
    "TwoFactorError",
    "ThrottleExceeded",
    "InvalidCredentials",
    "InvalidCode",
    "ConfigurationMissing",
    "ChallengeExpired",
    "LedgerUnavailable",
    "StoreUnavailable",
    "generate_totp_secret",
    "get_totp_provisioning_uri",
    "verify_totp",
    "setup_mfa",
    "generate_qr_code_base64",
    "LoginThrottle",
    "MemoryCounterStore",
    "RedisCounterStore",
    "DeviceTrustLedger",
    "LoginState",
    "TwoFactorOrchestrator",
]
