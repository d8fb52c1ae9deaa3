"""
Pydantic Models for TRUSTGATE API.

Request and response models for all API endpoints. No response model
carries a stored TOTP secret; only the setup response returns the freshly
generated one.
"""
from datetime import datetime
from typing import Optional, List, Dict
from pydantic import BaseModel, EmailStr, Field, ConfigDict, field_validator

# bcrypt only hashes the first 72 bytes and rejects longer input
PASSWORD_MAX_BYTES = 72


# ============================================
# Authentication Models
# ============================================

class UserRegister(BaseModel):
    """
    User registration request.

    Password must be at least 8 characters and at most 72 bytes (UTF-8).
    """
    email: EmailStr = Field(..., description="Valid email address")
    password: str = Field(..., min_length=8, description="Password (8 characters to 72 bytes)")

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        if len(value.encode("utf-8")) > PASSWORD_MAX_BYTES:
            raise ValueError(f"must be at most {PASSWORD_MAX_BYTES} bytes")
        return value

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "email": "user@example.com",
                "password": "securepassword123"
            }
        }
    )


class UserLogin(BaseModel):
    """
    User login request.

    Send the ``trusted_device`` cookie along to skip the second factor on a
    device that already passed it.
    """
    email: EmailStr = Field(..., description="Registered email address")
    password: str = Field(..., description="Account password")


class TokenResponse(BaseModel):
    """Authentication token response."""
    access_token: str
    token_type: str = "bearer"
    expires_in: int = Field(..., description="Token expiration in seconds")
    user_id: str
    email: str
    mfa_enabled: bool


class LoginAttemptRequest(BaseModel):
    """Throttle pre-check before a login form is submitted."""
    email: Optional[str] = Field(None, max_length=320, description="Account email, if known")


class RemainingAttempts(BaseModel):
    ip: int
    email: Optional[int] = None


class LoginAttemptResponse(BaseModel):
    ok: bool = True
    remaining: RemainingAttempts


class LoginResponse(BaseModel):
    """
    Result of the password step.

    status is ``complete`` (session issued) or ``second_factor_required``
    (finish with /auth/2fa/verify-login using challenge_token).
    """
    status: str
    user_id: str
    email: str
    mfa_required: bool = False
    challenge_token: Optional[str] = None
    access_token: Optional[str] = None
    token_type: str = "bearer"
    expires_in: Optional[int] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "status": "second_factor_required",
                "user_id": "0b5e0c52-8a4f-4a8e-9d43-3b8f3c1f2a10",
                "email": "user@example.com",
                "mfa_required": True,
                "challenge_token": "Yk3n0...",
            }
        }
    )


class VerifyLoginRequest(BaseModel):
    """Second-factor step of login."""
    user_id: str = Field(..., max_length=64)
    token: str = Field(..., max_length=16, description="6-digit code from the authenticator app")
    challenge_token: str = Field(..., max_length=128, description="Challenge from /auth/login")


class VerifyLoginResponse(BaseModel):
    success: bool = True
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user_id: str
    email: str
    trusted_device_persisted: bool


# ============================================
# Two-Factor Management Models
# ============================================

class UserIdRequest(BaseModel):
    user_id: str = Field(..., max_length=64)


class TwoFactorSetupResponse(BaseModel):
    """Enrollment material. Not persisted until /dashboard/2fa/verify succeeds."""
    secret: str
    otpauth: str
    qr_data_url: Optional[str] = Field(None, description="PNG data URI; absent when QR rendering failed")


class TwoFactorVerifyRequest(BaseModel):
    user_id: str = Field(..., max_length=64)
    secret: str = Field(..., min_length=16, max_length=128)
    token: str = Field(..., max_length=16)


class TotpStatus(BaseModel):
    enabled: bool
    created_at: Optional[datetime] = None


class TwoFactorVerifyResponse(BaseModel):
    success: bool = True
    totp: TotpStatus


class SuccessResponse(BaseModel):
    success: bool = True


# ============================================
# Trusted Device Models
# ============================================

class TrustedDevice(BaseModel):
    id: str
    name: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime
    last_seen: datetime


class TrustedDeviceList(BaseModel):
    devices: List[TrustedDevice]


class DeviceRefreshResponse(BaseModel):
    updated: bool
    id: Optional[str] = None
    user_id: Optional[str] = None
    reason: Optional[str] = None


class DeviceRevokeRequest(BaseModel):
    """Revoke one device by id, or every device when id is omitted."""
    user_id: str = Field(..., max_length=64)
    id: Optional[str] = Field(None, max_length=64)


class DeviceRevokeResponse(BaseModel):
    success: bool = True
    revoked: int


class ProfileResponse(BaseModel):
    """Dashboard profile view."""
    user_id: str
    email: str
    totp: Optional[TotpStatus] = None
    trusted_device: bool
    created_at: datetime
    last_login: Optional[datetime] = None


# ============================================
# Health Models
# ============================================

class HealthStatus(BaseModel):
    """Health check response."""
    status: str = Field(..., description="healthy or unhealthy")
    version: str
    services: Dict[str, str]
    timestamp: datetime


# ============================================
# Error Models
# ============================================

class ErrorResponse(BaseModel):
    """
    Standard error response.

    All API errors return this format with an error message,
    optional detail, and error code for programmatic handling.
    """
    error: str = Field(..., description="Error type/summary")
    detail: Optional[str] = Field(None, description="Detailed error message")
    code: Optional[str] = Field(None, description="Error code for programmatic handling")
    retry_after: Optional[int] = Field(None, description="Seconds to wait before retrying (throttling only)")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": "Too many login attempts for this account",
                "detail": None,
                "code": "THROTTLED",
                "retry_after": 840
            }
        }
    )
