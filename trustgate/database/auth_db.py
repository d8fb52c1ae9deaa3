"""
Relational Database Manager for Authentication and Device Trust.

This module provides connection management and operations for:
- User accounts (registration, password verification)
- Session management
- Second-factor (TOTP) configuration
- The trusted device ledger

PostgreSQL in production; SQLite URLs are accepted for local runs and tests.
SECURITY NOTE: trusted devices are stored as SHA-256 hashes only, the raw
device token never reaches this module.
"""
import uuid
import secrets
import logging
from dataclasses import dataclass
from typing import Optional, Dict, List
from datetime import datetime, timedelta, timezone
from contextlib import contextmanager

import bcrypt
from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from .secret_cipher import TotpSecretCipher, build_cipher, read_stored_secret

logger = logging.getLogger(__name__)

TRUSTED_DEVICES_TABLE = "trusted_devices"


def _as_datetime(value):
    """SQLite hands timestamps back as ISO strings; PostgreSQL as datetimes."""
    if isinstance(value, str):
        return datetime.fromisoformat(value)
    return value


@dataclass
class SecondFactorConfig:
    """A user's TOTP configuration. The secret is never sent to clients."""
    enabled: bool
    secret: str
    created_at: datetime


class AuthDB:
    """
    Connection manager for authentication data.

    This class handles:
    - User accounts (email, password hash, TOTP configuration)
    - Sessions
    - Trusted devices (hashed bearer tokens)

    Example usage:
        auth_db = AuthDB()

        user_id = auth_db.create_user("user@example.com", hashed_password)
        session_token = auth_db.create_session(user_id)
    """

    def __init__(
        self,
        connection_string: Optional[str] = None,
        cipher: Optional[TotpSecretCipher] = None,
    ):
        """
        Initialize database connection.

        Args:
            connection_string: SQLAlchemy URL. Uses settings if not provided.
            cipher: Optional at-rest cipher for TOTP secrets.
        """
        if connection_string is None:
            from ..utils.config import get_settings
            settings = get_settings()
            connection_string = settings.database_url
            if cipher is None:
                cipher = build_cipher(settings.totp_encryption_key)

        if connection_string.startswith("sqlite"):
            self.engine = create_engine(
                connection_string,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            self.engine = create_engine(
                connection_string,
                poolclass=QueuePool,
                pool_size=10,
                max_overflow=20,
                pool_timeout=30,
                pool_pre_ping=True,  # Test connections before use (detect stale)
                pool_recycle=300,
            )
        self.Session = sessionmaker(bind=self.engine)
        self.cipher = cipher
        self._ledger_ready = False

    @contextmanager
    def get_session(self):
        """
        Get a database session with automatic cleanup.

        Usage:
            with auth_db.get_session() as session:
                result = session.execute(query)
        """
        session = self.Session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ==========================================
    # User Management
    # ==========================================

    def create_user(self, email: str, password_hash: str) -> str:
        """
        Create a new user account.

        Args:
            email: User's email address.
            password_hash: Bcrypt-hashed password.

        Returns:
            UUID of created user.

        Raises:
            ValueError: If email already exists.
        """
        user_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc)
        normalized = email.lower().strip()

        with self.get_session() as session:
            existing = session.execute(
                text("SELECT user_id FROM users WHERE email = :email"),
                {"email": normalized}
            ).fetchone()

            if existing:
                raise ValueError(f"User with email '{email}' already exists")

            session.execute(
                text("""
                    INSERT INTO users (
                        user_id, email, password_hash, is_active,
                        totp_enabled, created_at, updated_at
                    ) VALUES (
                        :user_id, :email, :password_hash, :is_active,
                        :totp_enabled, :created_at, :updated_at
                    )
                """),
                {
                    "user_id": user_id,
                    "email": normalized,
                    "password_hash": password_hash,
                    "is_active": True,
                    "totp_enabled": False,
                    "created_at": now,
                    "updated_at": now
                }
            )

        logger.info(f"Created user: {normalized} (id={user_id})")
        return user_id

    def _user_from_row(self, row) -> Dict:
        return {
            "user_id": row[0],
            "email": row[1],
            "password_hash": row[2],
            "is_active": bool(row[3]),
            "totp_enabled": bool(row[4]),
            "last_login": _as_datetime(row[5]),
            "created_at": _as_datetime(row[6])
        }

    def get_user_by_email(self, email: str) -> Optional[Dict]:
        """Get user by email address, or None if not found."""
        with self.get_session() as session:
            row = session.execute(
                text("""
                    SELECT user_id, email, password_hash, is_active,
                           totp_enabled, last_login, created_at
                    FROM users
                    WHERE email = :email
                """),
                {"email": email.lower().strip()}
            ).fetchone()

            return self._user_from_row(row) if row else None

    def get_user_by_id(self, user_id: str) -> Optional[Dict]:
        """Get user by ID, or None if not found."""
        with self.get_session() as session:
            row = session.execute(
                text("""
                    SELECT user_id, email, password_hash, is_active,
                           totp_enabled, last_login, created_at
                    FROM users
                    WHERE user_id = :user_id
                """),
                {"user_id": user_id}
            ).fetchone()

            return self._user_from_row(row) if row else None

    def verify_credentials(self, email: str, password: str) -> Optional[Dict]:
        """
        Check an email/password pair.

        Returns:
            The user dict when the account exists, is active and the password
            matches; None otherwise.
        """
        user = self.get_user_by_email(email)
        if user is None or not user["is_active"]:
            return None
        if not verify_password(password, user["password_hash"]):
            return None
        return user

    def update_last_login(self, user_id: str) -> None:
        """Update user's last login timestamp."""
        with self.get_session() as session:
            session.execute(
                text("""
                    UPDATE users
                    SET last_login = :now, updated_at = :now
                    WHERE user_id = :user_id
                """),
                {"user_id": user_id, "now": datetime.now(timezone.utc)}
            )

    def deactivate_user(self, user_id: str) -> None:
        """
        Deactivate a user account (soft delete).

        Clears the TOTP configuration and invalidates all sessions.
        """
        now = datetime.now(timezone.utc)
        with self.get_session() as session:
            session.execute(
                text("""
                    UPDATE users
                    SET is_active = :inactive,
                        totp_enabled = :disabled,
                        totp_secret = NULL,
                        totp_created_at = NULL,
                        updated_at = :now
                    WHERE user_id = :user_id
                """),
                {"user_id": user_id, "inactive": False, "disabled": False, "now": now}
            )
            session.execute(
                text("UPDATE sessions SET is_active = :inactive WHERE user_id = :user_id"),
                {"user_id": user_id, "inactive": False}
            )
        logger.info(f"Deactivated user {user_id}")

    # ==========================================
    # Session Management
    # ==========================================

    def create_session(
        self,
        user_id: str,
        device_fingerprint: Optional[str] = None,
        expires_hours: int = 24
    ) -> str:
        """
        Create a new session for a user.

        Returns:
            Session token (secure random 64-char hex string).
        """
        session_token = secrets.token_hex(32)
        now = datetime.now(timezone.utc)
        expires_at = now + timedelta(hours=expires_hours)

        with self.get_session() as session:
            session.execute(
                text("""
                    INSERT INTO sessions (
                        session_token, user_id, device_fingerprint,
                        is_active, created_at, expires_at
                    ) VALUES (
                        :session_token, :user_id, :device_fingerprint,
                        :is_active, :created_at, :expires_at
                    )
                """),
                {
                    "session_token": session_token,
                    "user_id": user_id,
                    "device_fingerprint": (device_fingerprint or "")[:255] or None,
                    "is_active": True,
                    "created_at": now,
                    "expires_at": expires_at
                }
            )

        logger.debug(f"Created session for user {user_id}, expires {expires_at}")
        return session_token

    def validate_session(self, session_token: str) -> Optional[Dict]:
        """
        Validate a session token.

        Returns:
            User dict if valid, None if invalid/expired.
        """
        now = datetime.now(timezone.utc)

        with self.get_session() as session:
            row = session.execute(
                text("""
                    SELECT u.user_id, u.email, u.is_active, u.totp_enabled,
                           s.expires_at
                    FROM sessions s
                    JOIN users u ON s.user_id = u.user_id
                    WHERE s.session_token = :token
                      AND s.is_active = :active
                      AND s.expires_at > :now
                      AND u.is_active = :active
                """),
                {"token": session_token, "now": now, "active": True}
            ).fetchone()

            if not row:
                return None

            return {
                "user_id": row[0],
                "email": row[1],
                "is_active": bool(row[2]),
                "totp_enabled": bool(row[3]),
                "session_expires_at": _as_datetime(row[4])
            }

    def invalidate_session(self, session_token: str) -> None:
        """Invalidate (logout) a session."""
        with self.get_session() as session:
            session.execute(
                text("UPDATE sessions SET is_active = :inactive WHERE session_token = :token"),
                {"token": session_token, "inactive": False}
            )

    def invalidate_all_sessions(self, user_id: str) -> int:
        """
        Invalidate all sessions for a user (logout from all devices).

        Returns:
            Number of sessions invalidated.
        """
        with self.get_session() as session:
            result = session.execute(
                text("""
                    UPDATE sessions
                    SET is_active = :inactive
                    WHERE user_id = :user_id AND is_active = :active
                """),
                {"user_id": user_id, "inactive": False, "active": True}
            )
            count = result.rowcount
        logger.info(f"Invalidated {count} sessions for user {user_id}")
        return count

    # ==========================================
    # Second-Factor Configuration
    # ==========================================

    def get_second_factor_config(self, user_id: str) -> Optional[SecondFactorConfig]:
        """
        Get a user's TOTP configuration.

        Returns:
            The configuration, or None when 2FA is not enabled.

        Raises:
            SecretDecryptionError: If the stored secret cannot be decrypted.
        """
        with self.get_session() as session:
            row = session.execute(
                text("""
                    SELECT totp_enabled, totp_secret, totp_created_at
                    FROM users
                    WHERE user_id = :user_id
                """),
                {"user_id": user_id}
            ).fetchone()

        if not row or not row[0] or not row[1]:
            return None

        return SecondFactorConfig(
            enabled=True,
            secret=read_stored_secret(row[1], self.cipher),
            created_at=_as_datetime(row[2]),
        )

    def set_second_factor_config(self, user_id: str, config: Optional[SecondFactorConfig]) -> None:
        """
        Store or clear a user's TOTP configuration.

        Args:
            user_id: UUID of user.
            config: New configuration, or None to disable 2FA.
        """
        if config is None:
            stored_secret, enabled, created_at = None, False, None
        else:
            stored_secret = self.cipher.encrypt(config.secret) if self.cipher else config.secret
            enabled, created_at = config.enabled, config.created_at

        with self.get_session() as session:
            session.execute(
                text("""
                    UPDATE users
                    SET totp_secret = :totp_secret,
                        totp_enabled = :totp_enabled,
                        totp_created_at = :totp_created_at,
                        updated_at = :now
                    WHERE user_id = :user_id
                """),
                {
                    "user_id": user_id,
                    "totp_secret": stored_secret,
                    "totp_enabled": enabled,
                    "totp_created_at": created_at,
                    "now": datetime.now(timezone.utc)
                }
            )
        logger.info(f"Updated 2FA for user {user_id}: enabled={enabled}")

    # ==========================================
    # Trusted Device Ledger
    # ==========================================

    def has_trusted_devices_table(self) -> bool:
        """
        Check whether the trusted device ledger is provisioned.

        A positive answer is cached; a missing table is re-checked on every
        call so a later migration is picked up without a restart.
        """
        if self._ledger_ready:
            return True
        self._ledger_ready = inspect(self.engine).has_table(TRUSTED_DEVICES_TABLE)
        return self._ledger_ready

    def insert_trusted_device(self, user_id: str, token_hash: str, user_agent: str) -> str:
        """
        Persist a trusted device.

        Returns:
            ID of the created record.
        """
        device_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc)

        with self.get_session() as session:
            session.execute(
                text("""
                    INSERT INTO trusted_devices (
                        id, user_id, token_hash, user_agent, created_at, last_seen
                    ) VALUES (
                        :id, :user_id, :token_hash, :user_agent, :now, :now
                    )
                """),
                {
                    "id": device_id,
                    "user_id": user_id,
                    "token_hash": token_hash,
                    "user_agent": user_agent,
                    "now": now
                }
            )
        return device_id

    def find_trusted_device(self, user_id: str, token_hash: str) -> Optional[str]:
        """Return the device ID matching (user_id, token_hash), or None."""
        with self.get_session() as session:
            row = session.execute(
                text("""
                    SELECT id FROM trusted_devices
                    WHERE user_id = :user_id AND token_hash = :token_hash
                """),
                {"user_id": user_id, "token_hash": token_hash}
            ).fetchone()
            return row[0] if row else None

    def touch_trusted_device(self, token_hash: str) -> Optional[Dict]:
        """
        Update last_seen for the device holding token_hash.

        Returns:
            {"id", "user_id"} of the device, or None if no device matches.
        """
        with self.get_session() as session:
            row = session.execute(
                text("SELECT id, user_id FROM trusted_devices WHERE token_hash = :token_hash"),
                {"token_hash": token_hash}
            ).fetchone()

            if not row:
                return None

            session.execute(
                text("UPDATE trusted_devices SET last_seen = :now WHERE id = :id"),
                {"id": row[0], "now": datetime.now(timezone.utc)}
            )
            return {"id": row[0], "user_id": row[1]}

    def list_trusted_devices(self, user_id: str) -> List[Dict]:
        """Get a user's trusted devices, newest first (hashes excluded)."""
        with self.get_session() as session:
            rows = session.execute(
                text("""
                    SELECT id, name, user_agent, created_at, last_seen
                    FROM trusted_devices
                    WHERE user_id = :user_id
                    ORDER BY created_at DESC
                """),
                {"user_id": user_id}
            ).fetchall()

            return [
                {
                    "id": row[0],
                    "name": row[1],
                    "user_agent": row[2],
                    "created_at": _as_datetime(row[3]),
                    "last_seen": _as_datetime(row[4])
                }
                for row in rows
            ]

    def delete_trusted_device(self, user_id: str, device_id: str) -> int:
        """Delete one device owned by user_id. Returns rows deleted."""
        with self.get_session() as session:
            result = session.execute(
                text("DELETE FROM trusted_devices WHERE id = :id AND user_id = :user_id"),
                {"id": device_id, "user_id": user_id}
            )
            return result.rowcount

    def delete_trusted_devices(self, user_id: str) -> int:
        """Delete all devices of a user. Returns rows deleted."""
        with self.get_session() as session:
            result = session.execute(
                text("DELETE FROM trusted_devices WHERE user_id = :user_id"),
                {"user_id": user_id}
            )
            return result.rowcount

    # ==========================================
    # Schema Initialization
    # ==========================================

    def init_schema(self) -> None:
        """
        Initialize database schema (create tables if not exist).

        Call this once during application setup.
        """
        with self.get_session() as session:
            session.execute(text("""
                CREATE TABLE IF NOT EXISTS users (
                    user_id VARCHAR(36) PRIMARY KEY,
                    email VARCHAR(255) UNIQUE NOT NULL,
                    password_hash VARCHAR(255) NOT NULL,
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    totp_enabled BOOLEAN NOT NULL DEFAULT FALSE,
                    totp_secret VARCHAR(255),
                    totp_created_at TIMESTAMP WITH TIME ZONE,
                    last_login TIMESTAMP WITH TIME ZONE,
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL,
                    updated_at TIMESTAMP WITH TIME ZONE NOT NULL
                )
            """))

            session.execute(text("""
                CREATE TABLE IF NOT EXISTS sessions (
                    session_token VARCHAR(64) PRIMARY KEY,
                    user_id VARCHAR(36) NOT NULL REFERENCES users(user_id) ON DELETE CASCADE,
                    device_fingerprint VARCHAR(255),
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL,
                    expires_at TIMESTAMP WITH TIME ZONE NOT NULL
                )
            """))

            session.execute(text("""
                CREATE TABLE IF NOT EXISTS trusted_devices (
                    id VARCHAR(36) PRIMARY KEY,
                    user_id VARCHAR(36) NOT NULL REFERENCES users(user_id) ON DELETE CASCADE,
                    token_hash VARCHAR(64) NOT NULL,
                    name VARCHAR(255),
                    user_agent TEXT,
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL,
                    last_seen TIMESTAMP WITH TIME ZONE NOT NULL
                )
            """))

            session.execute(text("""
                CREATE INDEX IF NOT EXISTS idx_sessions_user ON sessions(user_id)
            """))
            session.execute(text("""
                CREATE INDEX IF NOT EXISTS idx_sessions_expires ON sessions(expires_at)
            """))
            session.execute(text("""
                CREATE INDEX IF NOT EXISTS idx_trusted_devices_user ON trusted_devices(user_id)
            """))
            session.execute(text("""
                CREATE INDEX IF NOT EXISTS idx_trusted_devices_lookup
                ON trusted_devices(user_id, token_hash)
            """))
            session.execute(text("""
                CREATE INDEX IF NOT EXISTS idx_trusted_devices_token ON trusted_devices(token_hash)
            """))

        logger.info("Database schema initialized")

    def migrate_add_second_factor_columns(self) -> List[str]:
        """
        Migration: Add the TOTP columns to a users table created before 2FA.

        Safe to call multiple times - only adds columns that are missing.

        Returns:
            Names of the columns that were added.
        """
        existing = {col["name"] for col in inspect(self.engine).get_columns("users")}
        wanted = [
            ("totp_enabled", "BOOLEAN NOT NULL DEFAULT FALSE"),
            ("totp_secret", "VARCHAR(255)"),
            ("totp_created_at", "TIMESTAMP WITH TIME ZONE"),
        ]
        added = []
        with self.get_session() as session:
            for name, ddl in wanted:
                if name in existing:
                    continue
                session.execute(text(f"ALTER TABLE users ADD COLUMN {name} {ddl}"))
                added.append(name)

        if added:
            logger.info(f"Added {', '.join(added)} to users table")
        else:
            logger.debug("Second-factor columns already exist")
        return added


# ==========================================
# Password Hashing Utilities
# ==========================================

def hash_password(password: str, rounds: int = 12) -> str:
    """Hash a password using bcrypt."""
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(password.encode('utf-8'), salt).decode('utf-8')


def verify_password(password: str, password_hash: str) -> bool:
    """
    Verify a password against its hash.

    Returns:
        True if password matches, False otherwise (including malformed hashes).
    """
    try:
        return bcrypt.checkpw(
            password.encode('utf-8'),
            password_hash.encode('utf-8')
        )
    except ValueError:
        return False


# Singleton instance
_auth_db_instance: Optional[AuthDB] = None


def get_auth_db() -> AuthDB:
    """Get singleton AuthDB instance."""
    global _auth_db_instance
    if _auth_db_instance is None:
        _auth_db_instance = AuthDB()
    return _auth_db_instance
