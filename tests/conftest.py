"""
Pytest configuration and shared fixtures for TRUSTGATE tests.

This module provides common test fixtures for:
- SQLite-backed AuthDB instances
- Fake clocks for throttle windows and challenge expiry
- Throttle, challenge store, ledger and orchestrator wired together
- A TestClient with dependencies overridden
- A mock Redis client
"""
import os

# Must be set before trustgate modules read settings
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("REDIS_ENABLED", "false")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from datetime import datetime, timezone

import pyotp
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import text

from trustgate.api.main import app
from trustgate.api.deps import get_db, get_throttle, get_challenge_store
from trustgate.auth.challenges import LoginChallengeStore
from trustgate.auth.devices import DeviceTrustLedger
from trustgate.auth.orchestrator import TwoFactorOrchestrator
from trustgate.auth.throttle import LoginThrottle, MemoryCounterStore
from trustgate.database.auth_db import AuthDB, SecondFactorConfig, hash_password

PASSWORD = "correct horse battery"


class FakeClock:
    """Monotonic clock the test moves by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _enroll(db: AuthDB, user_id: str) -> str:
    """Enable 2FA for user_id directly in storage and return the secret."""
    secret = pyotp.random_base32()
    db.set_second_factor_config(
        user_id,
        SecondFactorConfig(enabled=True, secret=secret, created_at=datetime.now(timezone.utc)),
    )
    return secret


# ============================================
# Core Fixtures
# ============================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def auth_db():
    """Fresh in-memory database with the full schema."""
    db = AuthDB("sqlite://")
    db.init_schema()
    yield db
    db.engine.dispose()


@pytest.fixture
def throttle(clock):
    return LoginThrottle(MemoryCounterStore(clock=clock))


@pytest.fixture
def challenges(clock):
    return LoginChallengeStore(clock=clock)


@pytest.fixture
def ledger(auth_db):
    return DeviceTrustLedger(auth_db)


@pytest.fixture
def orchestrator(auth_db, ledger, throttle, challenges):
    return TwoFactorOrchestrator(auth_db, ledger, throttle, challenges, issuer="TrustGate Test")


@pytest.fixture
def user(auth_db):
    """A registered user without 2FA."""
    email = "alice@example.com"
    user_id = auth_db.create_user(email, hash_password(PASSWORD, rounds=4))
    return {"user_id": user_id, "email": email, "password": PASSWORD}


@pytest.fixture
def other_user(auth_db):
    email = "bob@example.com"
    user_id = auth_db.create_user(email, hash_password(PASSWORD, rounds=4))
    return {"user_id": user_id, "email": email, "password": PASSWORD}


@pytest.fixture
def enroll(auth_db):
    """Enable 2FA for a user ID; returns the secret."""
    return lambda user_id: _enroll(auth_db, user_id)


@pytest.fixture
def missing_ledger(auth_db):
    """Simulate a deployment where the trusted_devices migration never ran."""
    with auth_db.get_session() as session:
        session.execute(text("DROP TABLE trusted_devices"))
    auth_db._ledger_ready = False
    return auth_db


@pytest.fixture
def enrolled_user(auth_db, user):
    """A registered user with 2FA enabled."""
    return {**user, "secret": _enroll(auth_db, user["user_id"])}


# ============================================
# API Fixtures
# ============================================

@pytest.fixture
def client(auth_db, throttle, challenges):
    """Test client wired to the SQLite database and in-memory stores."""
    app.dependency_overrides[get_db] = lambda: auth_db
    app.dependency_overrides[get_throttle] = lambda: throttle
    app.dependency_overrides[get_challenge_store] = lambda: challenges

    yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(auth_db, user):
    """Bearer headers for a live session of ``user``."""
    token = auth_db.create_session(user["user_id"])
    return {"Authorization": f"Bearer {token}"}


# ============================================
# Redis Fixtures
# ============================================

@pytest.fixture
def mock_redis_client():
    """
    Mock Redis client for testing throttle counters and challenges.
    Implements the subset of commands TRUSTGATE uses, without real expiry.
    """
    class MockPipeline:
        def __init__(self, client):
            self.client = client
            self.ops = []

        def set(self, key, value, px=None, nx=False):
            self.ops.append(lambda: self.client.set(key, value, px=px, nx=nx))
            return self

        def incr(self, key):
            self.ops.append(lambda: self.client.incr(key))
            return self

        def pttl(self, key):
            self.ops.append(lambda: self.client.pttl(key))
            return self

        def execute(self):
            results = [op() for op in self.ops]
            self.ops = []
            return results

    class MockRedisClient:
        def __init__(self):
            self.store = {}
            self.expiry_ms = {}

        def get(self, key):
            return self.store.get(key)

        def set(self, key, value, ex=None, px=None, nx=False):
            if nx and key in self.store:
                return None
            self.store[key] = str(value)
            if px:
                self.expiry_ms[key] = px
            elif ex:
                self.expiry_ms[key] = ex * 1000
            return True

        def setex(self, key, seconds, value):
            return self.set(key, value, ex=seconds)

        def delete(self, key):
            self.expiry_ms.pop(key, None)
            return 1 if self.store.pop(key, None) is not None else 0

        def incr(self, key):
            self.store[key] = str(int(self.store.get(key, 0)) + 1)
            return int(self.store[key])

        def pttl(self, key):
            if key not in self.store:
                return -2
            return self.expiry_ms.get(key, -1)

        def pipeline(self, transaction=True):
            return MockPipeline(self)

    return MockRedisClient()
