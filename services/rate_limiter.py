"""
Fixed-window rate limiter
Shared counters keyed by caller identity, stored in the job store so every
worker process sees the same windows
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional

from config import RateLimitPolicy
from errors import RateLimitExceeded
from models import utcnow
from storage.base import Store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    count: int
    limit: int
    retry_after: float


class RateLimiter:

    def __init__(self, store: Store, policies: Optional[Dict[str, RateLimitPolicy]] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.policies = policies or {}
        self.clock = clock

    async def check(self, key: str, limit: int, window_ms: int) -> RateDecision:
        """Atomic check-and-increment of the fixed window for `key`"""
        if limit <= 0 or window_ms <= 0:
            raise ValueError(f"Invalid rate limit policy for {key}: limit={limit}, window_ms={window_ms}")
        now = self.clock()
        allowed, window = await self.store.hit_rate_window(key, limit, window_ms, now)
        retry_after = 0.0 if allowed else window.retry_after(window_ms, now)
        if not allowed:
            logger.debug(f"🚦 Rate limit hit for {key}: {window.count}/{limit}, retry in {retry_after:.1f}s")
        return RateDecision(allowed=allowed, count=window.count, limit=limit, retry_after=retry_after)

    async def allow(self, key: str, limit: int, window_ms: int) -> bool:
        decision = await self.check(key, limit, window_ms)
        return decision.allowed

    def _policy(self, scope: str) -> RateLimitPolicy:
        try:
            return self.policies[scope]
        except KeyError:
            raise ValueError(f"Unknown rate limit scope: {scope}")

    async def check_scope(self, scope: str, identity: str) -> RateDecision:
        policy = self._policy(scope)
        return await self.check(f"{policy.prefix}{identity}", policy.limit, policy.window_ms)

    async def enforce_scope(self, scope: str, identity: str) -> RateDecision:
        """Like check_scope but raises RateLimitExceeded when the window is full"""
        decision = await self.check_scope(scope, identity)
        if not decision.allowed:
            policy = self._policy(scope)
            raise RateLimitExceeded(f"{policy.prefix}{identity}", decision.retry_after)
        return decision
