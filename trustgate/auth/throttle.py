"""
Login throttle for TRUSTGATE.

Two independent fixed-window counters guard password login:
- per network origin (loose: 200 attempts / 60 minutes)
- per account email (tight: 5 attempts / 15 minutes)

Counters live in a CounterStore. MemoryCounterStore keeps them in-process;
RedisCounterStore shares them across instances and falls back to memory
when Redis is unreachable. Windows are fixed, not sliding: a burst exactly
at a window boundary is allowed.
"""
import math
import time
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

import redis

from .errors import ThrottleExceeded

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass
class CounterHit:
    """Counter state right after an increment."""
    count: int
    retry_after_seconds: int


@dataclass
class ThrottleDecision:
    allowed: bool
    retry_after_seconds: int = 0
    scope: Optional[str] = None
    remaining_account: Optional[int] = None
    remaining_origin: Optional[int] = None


class CounterStore:
    """Interface: atomically increment a fixed-window counter."""

    def hit(self, key: str, window_seconds: float) -> CounterHit:
        raise NotImplementedError


class MemoryCounterStore(CounterStore):
    """
    In-process fixed-window counters.

    Increments are serialized per key through a striped lock table, so
    concurrent attempts on one key never undercount while unrelated keys
    do not contend.
    """

    LOCK_STRIPES = 64

    def __init__(
        self,
        clock: Clock = time.monotonic,
        max_keys: int = 10000,
        prune_every: int = 1000,
    ):
        self.clock = clock
        self.max_keys = max_keys
        self.prune_every = prune_every
        # key -> (count, window_start, window_seconds)
        self._entries: Dict[str, Tuple[int, float, float]] = {}
        self._locks = [threading.Lock() for _ in range(self.LOCK_STRIPES)]
        self._prune_lock = threading.Lock()
        # Hits over max_keys since the last scan; starts due so the first overflow scans
        self._overflow_hits = prune_every

    def _lock_for(self, key: str) -> threading.Lock:
        return self._locks[hash(key) % self.LOCK_STRIPES]

    def hit(self, key: str, window_seconds: float) -> CounterHit:
        with self._lock_for(key):
            now = self.clock()
            entry = self._entries.get(key)
            if entry is None or now - entry[1] >= window_seconds:
                count, window_start = 1, now
            else:
                count, window_start = entry[0] + 1, entry[1]
            self._entries[key] = (count, window_start, window_seconds)

        if len(self._entries) > self.max_keys and self._prune_due():
            self._prune()

        remaining = window_seconds - (now - window_start)
        return CounterHit(count=count, retry_after_seconds=max(1, math.ceil(remaining)))

    def _prune_due(self) -> bool:
        """Allow one scan per ``prune_every`` hits while over max_keys."""
        with self._prune_lock:
            self._overflow_hits += 1
            if self._overflow_hits < self.prune_every:
                return False
            self._overflow_hits = 0
            return True

    def _prune(self) -> None:
        """Drop counters whose window has elapsed."""
        now = self.clock()
        for key, (_, window_start, window_seconds) in list(self._entries.items()):
            if now - window_start < window_seconds:
                continue
            with self._lock_for(key):
                entry = self._entries.get(key)
                if entry is not None and now - entry[1] >= entry[2]:
                    del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)


class RedisCounterStore(CounterStore):
    """
    Redis-backed fixed-window counters.

    Each hit runs one MULTI/EXEC transaction: SET NX starts the window with
    a PX expiry on the first hit, INCR counts, PTTL reports the time left.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        prefix: str = "trustgate:throttle:",
        fallback: Optional[CounterStore] = None,
    ):
        self.redis = redis_client
        self.prefix = prefix
        self.fallback = fallback if fallback is not None else MemoryCounterStore()

    def hit(self, key: str, window_seconds: float) -> CounterHit:
        full_key = f"{self.prefix}{key}"
        window_ms = int(window_seconds * 1000)

        try:
            pipe = self.redis.pipeline(transaction=True)
            pipe.set(full_key, 0, px=window_ms, nx=True)
            pipe.incr(full_key)
            pipe.pttl(full_key)
            _, count, ttl_ms = pipe.execute()
        except redis.RedisError as e:
            logger.warning(f"Redis error in login throttle: {e}. Using in-memory fallback.")
            return self.fallback.hit(key, window_seconds)

        if ttl_ms is None or ttl_ms < 0:
            ttl_ms = window_ms
        return CounterHit(count=int(count), retry_after_seconds=max(1, math.ceil(ttl_ms / 1000)))


def normalize_account_key(email: Optional[str]) -> Optional[str]:
    """Lower-case and strip an email; empty values mean no account key."""
    if not email:
        return None
    normalized = email.strip().lower()
    return normalized or None


class LoginThrottle:
    """
    Admits or denies login attempts.

    Example usage:
        throttle = LoginThrottle(MemoryCounterStore())
        decision = throttle.admit("user@example.com", "203.0.113.7")
        if not decision.allowed:
            ...  # retry after decision.retry_after_seconds
    """

    def __init__(
        self,
        store: Optional[CounterStore] = None,
        account_window_seconds: int = 15 * 60,
        account_max_attempts: int = 5,
        origin_window_seconds: int = 60 * 60,
        origin_max_attempts: int = 200,
    ):
        self.store = store if store is not None else MemoryCounterStore()
        self.account_window_seconds = account_window_seconds
        self.account_max_attempts = account_max_attempts
        self.origin_window_seconds = origin_window_seconds
        self.origin_max_attempts = origin_max_attempts

    def admit(self, account_key: Optional[str], origin_key: str) -> ThrottleDecision:
        """
        Record one attempt and decide whether it may proceed.

        The origin counter is checked first; an origin denial returns without
        touching the account counter.
        """
        origin_hit = self.store.hit(f"origin:{origin_key or 'unknown'}", self.origin_window_seconds)
        remaining_origin = max(0, self.origin_max_attempts - origin_hit.count)

        if origin_hit.count > self.origin_max_attempts:
            logger.warning(f"Login throttle: origin limit reached ({origin_hit.count} attempts)")
            return ThrottleDecision(
                allowed=False,
                retry_after_seconds=origin_hit.retry_after_seconds,
                scope="origin",
                remaining_origin=0,
            )

        account = normalize_account_key(account_key)
        if account is None:
            return ThrottleDecision(allowed=True, remaining_origin=remaining_origin)

        account_hit = self.store.hit(f"account:{account}", self.account_window_seconds)
        remaining_account = max(0, self.account_max_attempts - account_hit.count)

        if account_hit.count > self.account_max_attempts:
            logger.warning(f"Login throttle: account limit reached ({account_hit.count} attempts)")
            return ThrottleDecision(
                allowed=False,
                retry_after_seconds=account_hit.retry_after_seconds,
                scope="account",
                remaining_account=0,
                remaining_origin=remaining_origin,
            )

        return ThrottleDecision(
            allowed=True,
            remaining_account=remaining_account,
            remaining_origin=remaining_origin,
        )

    def check(self, account_key: Optional[str], origin_key: str) -> ThrottleDecision:
        """Like admit(), but raises ThrottleExceeded on denial."""
        decision = self.admit(account_key, origin_key)
        if not decision.allowed:
            raise ThrottleExceeded(decision.retry_after_seconds, decision.scope)
        return decision
