"""
Pending login challenges.

When a password login needs a second factor, the user gets an opaque
challenge token bound to their user ID. verify-login must present it, so a
TOTP code can only be tried after the password step succeeded.
"""
import time
import secrets
import logging
import threading
from typing import Callable, Dict, Optional, Tuple

import redis

logger = logging.getLogger(__name__)

# TTL for pending login challenges (5 minutes)
CHALLENGE_TTL = 300


class LoginChallengeStore:
    """Redis-backed challenge store with in-memory fallback."""

    def __init__(
        self,
        redis_client: Optional[redis.Redis] = None,
        ttl_seconds: int = CHALLENGE_TTL,
        clock: Callable[[], float] = time.monotonic,
        prefix: str = "trustgate:login_challenge:",
    ):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self.prefix = prefix
        self._memory: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def issue(self, user_id: str) -> str:
        """Create a challenge for user_id and return its token."""
        token = secrets.token_urlsafe(32)

        if self.redis is not None:
            try:
                self.redis.setex(f"{self.prefix}{token}", self.ttl_seconds, user_id)
                return token
            except redis.RedisError as e:
                logger.warning(f"Redis error storing login challenge: {e}")

        now = self.clock()
        with self._lock:
            for key in [k for k, (_, exp) in self._memory.items() if exp <= now]:
                del self._memory[key]
            self._memory[token] = (user_id, now + self.ttl_seconds)
        return token

    def resolve(self, token: str) -> Optional[str]:
        """
        Look up the user a challenge belongs to.

        Returns:
            The user ID, or None if the token is unknown or expired.
        """
        if not token:
            return None

        if self.redis is not None:
            try:
                user_id = self.redis.get(f"{self.prefix}{token}")
                if user_id:
                    return user_id
            except redis.RedisError as e:
                logger.warning(f"Redis error reading login challenge: {e}")

        with self._lock:
            entry = self._memory.get(token)
            if entry is None:
                return None
            user_id, expires_at = entry
            if self.clock() >= expires_at:
                del self._memory[token]
                return None
            return user_id

    def consume(self, token: str) -> bool:
        """
        Invalidate a challenge once it has been satisfied.

        Returns:
            True only for the one caller that removed a live challenge;
            concurrent consumers of the same token get False.
        """
        if not token:
            return False

        if self.redis is not None:
            try:
                if self.redis.delete(f"{self.prefix}{token}"):
                    return True
            except redis.RedisError as e:
                logger.warning(f"Redis error clearing login challenge: {e}")

        with self._lock:
            entry = self._memory.pop(token, None)
        return entry is not None and self.clock() < entry[1]
