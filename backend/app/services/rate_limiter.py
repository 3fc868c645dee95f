"""
Rate limiting using slowapi / limits.

Two layers, both keyed on client IP:
  - api  - RATE_LIMIT_MAX_REQUESTS per RATE_LIMIT_WINDOW_MS on every /api route
           (slowapi default limit, applied by SlowAPIMiddleware)
  - auth - AUTH_RATE_LIMIT_MAX_ATTEMPTS per AUTH_RATE_LIMIT_WINDOW_MINUTES on
           /signup and /login (AuthRateLimiter, injected as a dependency)

Counters live in the storage named by RATE_LIMIT_STORAGE_URI. "memory://" is
per-process: restarts reset it and several instances split the budget, so
multi-instance deployments should point it at a shared store (redis://...).
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Optional

from limits import parse
from limits.storage import MemoryStorage, Storage
from limits.strategies import FixedWindowRateLimiter
from slowapi import Limiter
from slowapi.util import get_remote_address

from app.core.config import settings

API_RATE = f"{settings.RATE_LIMIT_MAX_REQUESTS} per {max(1, settings.RATE_LIMIT_WINDOW_MS // 1000)} seconds"

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[API_RATE],
    storage_uri=settings.RATE_LIMIT_STORAGE_URI,
    enabled=settings.RATE_LIMIT_ENABLED,
)


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    remaining: int
    retry_after: int


class AuthRateLimiter:
    """Per-key fixed window guarding the auth endpoints.

    The window opens on a key's first hit; more than ``max_attempts`` hits
    before it closes are rejected. Expired keys are dropped by the storage.
    """

    NAMESPACE = "auth"

    def __init__(
        self,
        max_attempts: int = 5,
        window_seconds: int = 15 * 60,
        storage: Optional[Storage] = None,
    ) -> None:
        self._item = parse(f"{max_attempts} per {window_seconds} seconds")
        self._storage = storage or MemoryStorage()
        self._strategy = FixedWindowRateLimiter(self._storage)

    def hit(self, key: str) -> RateDecision:
        allowed = self._strategy.hit(self._item, self.NAMESPACE, key)
        stats = self._strategy.get_window_stats(self._item, self.NAMESPACE, key)
        retry_after = max(0, math.ceil(stats.reset_time - time.time()))
        return RateDecision(allowed=allowed, remaining=stats.remaining, retry_after=retry_after)

    def reset(self) -> None:
        self._storage.reset()
