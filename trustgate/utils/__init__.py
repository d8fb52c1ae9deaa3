"""
Shared utilities for TRUSTGATE.

This package provides:
- Configuration management
- Secrets management
- Logging with request IDs
"""
from .config import Settings, get_settings
from .secrets import get_secret, get_required_secret, mask_secret
from .log_config import RequestIdFilter, configure_logging, request_id_var

__all__ = [
    "Settings",
    "get_settings",
    "get_secret",
    "get_required_secret",
    "mask_secret",
    "RequestIdFilter",
    "configure_logging",
    "request_id_var",
]
