#!/usr/bin/env python3
"""
Run database migrations for TRUSTGATE.

Brings a database created before two-factor support up to date: adds the
TOTP columns to users and provisions the trusted_devices ledger. Until the
ledger exists the API runs in degraded trust mode (no browser is trusted).

Usage:
    python scripts/migrate_db.py
"""
import sys

from trustgate.database.auth_db import get_auth_db


def main():
    print("=" * 60)
    print("TRUSTGATE Database Migration")
    print("=" * 60)

    db = get_auth_db()

    print("\n[1] Checking second-factor columns...")
    added = db.migrate_add_second_factor_columns()
    if added:
        print(f"    Added {', '.join(added)} to users table")
    else:
        print("    Second-factor columns already exist")

    print("\n[2] Checking trusted_devices table...")
    if db.has_trusted_devices_table():
        print("    trusted_devices table already exists")
    else:
        db.init_schema()
        print("    Created trusted_devices table")

    print("\n" + "=" * 60)
    print("Migration complete!")
    print("=" * 60)
    return 0


if __name__ == "__main__":
    sys.exit(main())
