"""
Trusted device ledger.

A browser that completed a second-factor check receives a random bearer
token in the ``trusted_device`` cookie. The server stores only the token's
SHA-256 hash, so a leaked table cannot be replayed as trust.

If the ledger table is not provisioned or the database fails, trust checks
answer "not trusted" and issuance still returns a raw token so the caller
can set the cookie (degraded, unconfirmed trust).
"""
import hashlib
import logging
import secrets
from dataclasses import dataclass
from typing import Dict, List, Optional

from fastapi import Response
from sqlalchemy.exc import SQLAlchemyError

from ..database.auth_db import AuthDB
from .errors import LedgerUnavailable

logger = logging.getLogger(__name__)

TRUST_COOKIE_NAME = "trusted_device"
TRUST_COOKIE_MAX_AGE = 365 * 24 * 60 * 60  # one year
TOKEN_BYTES = 32
USER_AGENT_MAX_LENGTH = 1000


def hash_device_token(raw_token: str) -> str:
    """Hex SHA-256 of a raw device token."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


@dataclass
class IssuedDevice:
    raw_token: str
    device_id: Optional[str]
    persisted: bool


@dataclass
class TouchedDevice:
    device_id: str
    user_id: str


class DeviceTrustLedger:
    """
    Issues, checks, refreshes and revokes trusted devices.

    Example usage:
        ledger = DeviceTrustLedger(auth_db)
        issued = ledger.issue(user_id, request.headers.get("user-agent"))
        set_trust_cookie(response, issued.raw_token)
    """

    def __init__(self, db: AuthDB):
        self.db = db

    def is_available(self) -> bool:
        """Whether the ledger table exists and the database answers."""
        try:
            return self.db.has_trusted_devices_table()
        except SQLAlchemyError as e:
            logger.warning(f"Trusted device ledger check failed: {e}")
            return False

    def issue(self, user_id: str, user_agent: Optional[str] = None) -> IssuedDevice:
        """
        Create a trusted device for user_id.

        The raw token is returned exactly once and never stored.
        """
        raw_token = secrets.token_hex(TOKEN_BYTES)
        agent = (user_agent or "")[:USER_AGENT_MAX_LENGTH]

        if not self.is_available():
            logger.warning(f"Trusted device ledger unavailable, cookie-only trust for user {user_id}")
            return IssuedDevice(raw_token=raw_token, device_id=None, persisted=False)

        try:
            device_id = self.db.insert_trusted_device(user_id, hash_device_token(raw_token), agent)
        except SQLAlchemyError as e:
            logger.error(f"Failed to persist trusted device for user {user_id}: {e}")
            return IssuedDevice(raw_token=raw_token, device_id=None, persisted=False)

        logger.info(f"Issued trusted device {device_id} for user {user_id}")
        return IssuedDevice(raw_token=raw_token, device_id=device_id, persisted=True)

    def is_trusted(self, user_id: str, raw_token: Optional[str]) -> bool:
        """True only when a record for (user_id, sha256(raw_token)) exists."""
        if not raw_token or not user_id:
            return False
        if not self.is_available():
            return False

        try:
            return self.db.find_trusted_device(user_id, hash_device_token(raw_token)) is not None
        except SQLAlchemyError as e:
            logger.warning(f"Trusted device lookup failed, treating device as untrusted: {e}")
            return False

    def touch(self, raw_token: Optional[str]) -> Optional[TouchedDevice]:
        """Refresh last_seen for the device holding raw_token; None if no match."""
        if not raw_token or not self.is_available():
            return None

        try:
            row = self.db.touch_trusted_device(hash_device_token(raw_token))
        except SQLAlchemyError as e:
            logger.warning(f"Trusted device refresh failed: {e}")
            return None

        if row is None:
            return None
        return TouchedDevice(device_id=row["id"], user_id=row["user_id"])

    def revoke(self, user_id: str, device_id: Optional[str] = None) -> int:
        """
        Delete one device (scoped to its owner) or all devices of a user.

        Returns:
            Number of devices removed (0 when the ledger is not provisioned).

        Raises:
            LedgerUnavailable: If the delete itself fails.
        """
        if not self.is_available():
            logger.warning(f"Trusted device ledger unavailable, nothing revoked for user {user_id}")
            return 0

        try:
            if device_id is None:
                count = self.db.delete_trusted_devices(user_id)
            else:
                count = self.db.delete_trusted_device(user_id, device_id)
        except SQLAlchemyError as e:
            logger.error(f"Failed to revoke trusted devices for user {user_id}: {e}")
            raise LedgerUnavailable() from e

        logger.info(f"Revoked {count} trusted device(s) for user {user_id}")
        return count

    def list_devices(self, user_id: str) -> List[Dict]:
        """A user's devices, newest first. Token hashes are never included."""
        if not self.is_available():
            return []
        try:
            return self.db.list_trusted_devices(user_id)
        except SQLAlchemyError as e:
            logger.warning(f"Failed to list trusted devices for user {user_id}: {e}")
            return []


def set_trust_cookie(response: Response, raw_token: str, secure: bool = False) -> None:
    """Attach the trust cookie (HTTP-only, SameSite=Lax, one year)."""
    response.set_cookie(
        key=TRUST_COOKIE_NAME,
        value=raw_token,
        max_age=TRUST_COOKIE_MAX_AGE,
        path="/",
        secure=secure,
        httponly=True,
        samesite="lax",
    )


def clear_trust_cookie(response: Response, secure: bool = False) -> None:
    """Expire the trust cookie on the client."""
    response.delete_cookie(
        key=TRUST_COOKIE_NAME,
        path="/",
        secure=secure,
        httponly=True,
        samesite="lax",
    )
