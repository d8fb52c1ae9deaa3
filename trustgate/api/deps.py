"""
FastAPI Dependencies for TRUSTGATE API.

Provides:
- Redis client
- Database connection
- Authentication dependencies
- Login throttle, challenge store, device ledger and orchestrator
"""
import os
import logging
from typing import Optional, Dict

import redis
from fastapi import Depends, HTTPException, status, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..auth.challenges import LoginChallengeStore
from ..auth.devices import TRUST_COOKIE_NAME, DeviceTrustLedger
from ..auth.orchestrator import TwoFactorOrchestrator
from ..auth.throttle import CounterStore, LoginThrottle, MemoryCounterStore, RedisCounterStore
from ..database.auth_db import AuthDB, get_auth_db
from ..utils.config import get_settings

logger = logging.getLogger(__name__)


# ============================================
# Redis Client
# ============================================

_redis_client: Optional[redis.Redis] = None


def get_redis_client() -> Optional[redis.Redis]:
    """
    Get Redis client singleton.

    Returns None if Redis is disabled or unavailable.
    """
    global _redis_client

    if _redis_client is not None:
        return _redis_client

    if not get_settings().redis_enabled:
        return None

    host = os.getenv("REDIS_HOST", "localhost")
    port = int(os.getenv("REDIS_PORT", "6379"))
    password = os.getenv("REDIS_PASSWORD", "") or None
    db = int(os.getenv("REDIS_DB", "0"))

    try:
        client = redis.Redis(
            host=host,
            port=port,
            password=password,
            db=db,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        )
        client.ping()
        logger.info(f"Redis connected: {host}:{port}")
        _redis_client = client
        return _redis_client
    except redis.RedisError as e:
        logger.warning(f"Redis connection failed: {e}. Throttle and challenges will use in-memory fallback.")
        return None


# Security scheme
security = HTTPBearer(auto_error=False)


# ============================================
# Database Dependencies
# ============================================

def get_db() -> AuthDB:
    """Get database connection."""
    return get_auth_db()


# ============================================
# Login Throttle / Challenges
# ============================================

_throttle: Optional[LoginThrottle] = None
_challenge_store: Optional[LoginChallengeStore] = None


def get_throttle() -> LoginThrottle:
    """Get singleton login throttle (Redis-backed if available)."""
    global _throttle
    if _throttle is None:
        settings = get_settings()
        redis_client = get_redis_client()
        store: CounterStore
        if redis_client is not None:
            store = RedisCounterStore(redis_client)
        else:
            store = MemoryCounterStore()
        _throttle = LoginThrottle(
            store,
            account_window_seconds=settings.account_window_seconds,
            account_max_attempts=settings.account_max_attempts,
            origin_window_seconds=settings.origin_window_seconds,
            origin_max_attempts=settings.origin_max_attempts,
        )
    return _throttle


def get_challenge_store() -> LoginChallengeStore:
    """Get singleton login challenge store."""
    global _challenge_store
    if _challenge_store is None:
        _challenge_store = LoginChallengeStore(
            get_redis_client(),
            ttl_seconds=get_settings().login_challenge_ttl_seconds,
        )
    return _challenge_store


def get_ledger(db: AuthDB = Depends(get_db)) -> DeviceTrustLedger:
    return DeviceTrustLedger(db)


def get_orchestrator(
    db: AuthDB = Depends(get_db),
    ledger: DeviceTrustLedger = Depends(get_ledger),
    throttle: LoginThrottle = Depends(get_throttle),
    challenges: LoginChallengeStore = Depends(get_challenge_store),
) -> TwoFactorOrchestrator:
    settings = get_settings()
    return TwoFactorOrchestrator(
        db,
        ledger,
        throttle,
        challenges,
        issuer=settings.app_name,
        session_hours=settings.session_hours,
        fail_open=settings.two_factor_fail_open,
    )


# ============================================
# Request Helpers
# ============================================

def client_origin(request: Request) -> str:
    """
    Network origin used as the throttle key.

    First X-Forwarded-For entry, then X-Real-IP, then the socket peer.
    """
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def trust_cookie(request: Request) -> Optional[str]:
    return request.cookies.get(TRUST_COOKIE_NAME) or None


# ============================================
# Authentication Dependencies
# ============================================

async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AuthDB = Depends(get_db),
    ledger: DeviceTrustLedger = Depends(get_ledger),
) -> Dict:
    """
    Validate bearer token and return current user.

    A presented trust cookie has its last_seen refreshed.

    Raises:
        HTTPException: If token is missing, invalid, or expired.
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = credentials.credentials
    user = db.validate_session(token)

    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    device_token = trust_cookie(request)
    if device_token:
        ledger.touch(device_token)

    # Store token in user dict for logout
    user["_session_token"] = token
    return user


def require_same_user(user: Dict, user_id: str) -> str:
    """
    Reject requests acting on another user's account.

    Raises:
        HTTPException: 403 if user_id is not the authenticated user.
    """
    current = str(user["user_id"])
    if user_id != current:
        logger.warning(f"User {current} attempted to act on account {user_id}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Forbidden",
        )
    return current
