#!/usr/bin/env python3
"""
Initialize TRUSTGATE database schema.

Run this after first setup, or after pointing DATABASE_URL / POSTGRES_* at
a new database:

    python scripts/init_databases.py

Creates the users, sessions and trusted_devices tables (idempotent).
"""
import sys

from sqlalchemy.exc import SQLAlchemyError

from trustgate.database.auth_db import AuthDB
from trustgate.utils.secrets import mask_secret
from trustgate.utils.config import get_settings


def main() -> int:
    print("=" * 60)
    print("TRUSTGATE Database Initialization")
    print("=" * 60)

    settings = get_settings()
    print(f"\nDatabase: {mask_secret(settings.database_url, visible_chars=12)}")

    try:
        db = AuthDB()
        db.init_schema()
    except SQLAlchemyError as e:
        print(f"\nSchema initialization failed: {e}")
        return 1

    print("  Tables: users, sessions, trusted_devices")
    print(f"  Trusted device ledger ready: {db.has_trusted_devices_table()}")
    if settings.totp_encryption_key:
        print("  TOTP secrets: encrypted at rest (TOTP_ENCRYPTION_KEY set)")
    else:
        print("  TOTP secrets: plaintext (set TOTP_ENCRYPTION_KEY to encrypt)")

    print("\n" + "=" * 60)
    print("Database initialization complete!")
    print("=" * 60)
    return 0


if __name__ == "__main__":
    sys.exit(main())
