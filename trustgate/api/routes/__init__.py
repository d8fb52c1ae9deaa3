"""
API Routes for TRUSTGATE.
"""
from .auth import router as auth_router
from .two_factor import router as two_factor_router
from .devices import router as devices_router
from .account import router as account_router
from .health import router as health_router

__all__ = [
    "auth_router",
    "two_factor_router",
    "devices_router",
    "account_router",
    "health_router",
]
