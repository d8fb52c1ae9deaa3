"""
TRUSTGATE REST API.

FastAPI-based REST API for password login, TOTP two-factor authentication
and trusted devices.
"""
from .main import app, create_app

__all__ = ["app", "create_app"]
