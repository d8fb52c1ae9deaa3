"""
Database connection managers for TRUSTGATE.

This package provides:
- auth_db: PostgreSQL for users, sessions, TOTP configuration and trusted devices
- secret_cipher: at-rest encryption for TOTP secrets
"""
