"""
TOTP engine for TRUSTGATE.

Implements TOTP (Time-based One-Time Password) using RFC 6238: 30-second
steps, 6-digit codes. Compatible with Google Authenticator, Authy, and other
TOTP apps.
"""
import base64
import io
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

import pyotp
import qrcode

logger = logging.getLogger(__name__)

CODE_DIGITS = 6


@dataclass
class EnrollmentSetup:
    """Un-persisted enrollment material handed to the user once."""
    secret: str
    provisioning_uri: str
    qr_code_base64: Optional[str]


def generate_totp_secret() -> str:
    """
    Generate a new TOTP secret for enrollment.

    Returns:
        Base32-encoded secret (32 characters).
    """
    return pyotp.random_base32()


def get_totp_provisioning_uri(
    secret: str,
    email: str,
    issuer: str = "TrustGate"
) -> str:
    """
    Generate a provisioning URI for TOTP apps.

    Args:
        secret: Base32-encoded TOTP secret.
        email: Account label shown in the authenticator app.
        issuer: Application name shown in the authenticator app.

    Returns:
        otpauth:// URI string.
    """
    totp = pyotp.TOTP(secret)
    return totp.provisioning_uri(name=email, issuer_name=issuer)


def generate_qr_code(uri: str) -> bytes:
    """Render the provisioning URI as PNG bytes."""
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=10,
        border=4,
    )
    qr.add_data(uri)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")

    buffer = io.BytesIO()
    img.save(buffer, format='PNG')
    return buffer.getvalue()


def generate_qr_code_base64(uri: str) -> str:
    """
    Generate a base64-encoded QR code for embedding in HTML.

    Returns:
        data:image/png;base64 URI.
    """
    b64 = base64.b64encode(generate_qr_code(uri)).decode('utf-8')
    return f"data:image/png;base64,{b64}"


def setup_mfa(email: str, issuer: str = "TrustGate") -> EnrollmentSetup:
    """
    Generate secret, URI and QR code for a new enrollment.

    A QR rendering failure degrades to manual secret entry
    (``qr_code_base64`` is None) instead of failing the enrollment.
    """
    secret = generate_totp_secret()
    uri = get_totp_provisioning_uri(secret, email, issuer)

    try:
        qr_base64 = generate_qr_code_base64(uri)
    except Exception as e:
        logger.warning(f"QR code generation failed, manual entry only: {e}")
        qr_base64 = None

    return EnrollmentSetup(secret=secret, provisioning_uri=uri, qr_code_base64=qr_base64)


def verify_totp(
    secret: str,
    code: str,
    window: int = 1,
    for_time: Optional[Union[int, datetime]] = None,
) -> bool:
    """
    Verify a TOTP code against the secret.

    Args:
        secret: Base32-encoded TOTP secret.
        code: 6-digit code entered by user (spaces and dashes ignored).
        window: Adjacent 30-second steps accepted on each side (1 = +-30s).
        for_time: Time to verify against, defaults to now.

    Returns:
        True if code is valid. Malformed input never raises.
    """
    if not secret or not code:
        return False

    code = code.replace(" ", "").replace("-", "")
    if len(code) != CODE_DIGITS or not code.isdigit():
        return False

    try:
        return pyotp.TOTP(secret).verify(code, for_time=for_time, valid_window=window)
    except Exception as e:
        logger.warning(f"TOTP verification error: {type(e).__name__}")
        return False


def get_current_totp(secret: str) -> str:
    """Get the current TOTP code (for testing/debugging)."""
    return pyotp.TOTP(secret).now()
