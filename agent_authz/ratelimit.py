"""In-process token-bucket rate limiting for the HTTP gateway.

Per-process and per-key only; a shared limiter belongs in the reverse proxy.

Env vars:
  - AUTHZ_RATE_LIMIT_AUTHORIZE: e.g. '600/m' (default) for /v1/authorize
  - AUTHZ_RATE_LIMIT_ADMIN: e.g. '60/m' (default) for every other mutating endpoint
"""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Dict, Tuple

logger = logging.getLogger("agent_authz.ratelimit")


@dataclass
class TokenBucket:
    capacity: float
    refill_rate_per_sec: float
    tokens: float
    last_ts: float

    @classmethod
    def new(cls, capacity: float, refill_rate_per_sec: float) -> "TokenBucket":
        return cls(capacity=capacity, refill_rate_per_sec=refill_rate_per_sec, tokens=capacity, last_ts=time.monotonic())

    def allow(self, cost: float = 1.0) -> bool:
        now = time.monotonic()
        elapsed = max(0.0, now - self.last_ts)
        self.last_ts = now
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate_per_sec)
        if self.tokens >= cost:
            self.tokens -= cost
            return True
        return False


class RateLimiter:
    """Keyed token buckets; refuses new keys beyond max_keys."""

    def __init__(self, capacity: float, refill_rate_per_sec: float, max_keys: int = 20000):
        if capacity <= 0 or refill_rate_per_sec <= 0:
            raise ValueError("capacity and refill_rate_per_sec must be positive")
        self._capacity = float(capacity)
        self._refill = float(refill_rate_per_sec)
        self._max_keys = int(max_keys) if int(max_keys) > 0 else 20000
        self._buckets: Dict[str, TokenBucket] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_spec(cls, spec: str, **kwargs) -> "RateLimiter":
        capacity, per_sec = parse_rate_limit(spec)
        return cls(capacity, per_sec, **kwargs)

    def allow(self, key: str, cost: float = 1.0) -> bool:
        key = key or "_anon"
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                if len(self._buckets) >= self._max_keys:
                    return False
                bucket = TokenBucket.new(self._capacity, self._refill)
                self._buckets[key] = bucket
            return bucket.allow(cost=cost)


def parse_rate_limit(spec: str) -> Tuple[float, float]:
    """Parse '30/m', '10/s' or '1000/h' into (capacity, refill_rate_per_sec)."""
    s = (spec or "").strip().lower()
    if "/" not in s:
        raise ValueError("invalid rate limit spec; expected like '30/m' or '10/s'")
    num_str, unit = s.split("/", 1)
    n = float(num_str)
    unit = unit.strip()
    if n <= 0:
        raise ValueError("rate must be positive")
    if unit in ("s", "sec", "second", "seconds"):
        per_sec = n
    elif unit in ("m", "min", "minute", "minutes"):
        per_sec = n / 60.0
    elif unit in ("h", "hr", "hour", "hours"):
        per_sec = n / 3600.0
    else:
        raise ValueError(f"unsupported rate unit: {unit}")
    return float(n), float(per_sec)


def limiter_from_env(name: str, default: str) -> RateLimiter:
    spec = (os.getenv(name, "") or "").strip() or default
    try:
        return RateLimiter.from_spec(spec)
    except ValueError as e:
        logger.warning("Invalid %s=%r (%s); using %s", name, spec, e, default)
        return RateLimiter.from_spec(default)
