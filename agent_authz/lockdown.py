"""Storage circuit breaker.

The ledger is the authority for "was this action decided, and how". If the
backing store becomes slow, locked or unavailable, commits must stop rather
than silently degrade: the breaker trips into LOCKDOWN for a fixed window,
during which every storage operation raises StorageLockdownError and the
authorizer returns a hard fail-closed signal.

Environment variables
---------------------
- AUTHZ_DB_LATENCY_THRESHOLD_MS: trip immediately on operations slower than this.
- AUTHZ_DB_FAILURE_THRESHOLD: failures required to trip.
- AUTHZ_DB_LOCKDOWN_SECONDS: length of the lockdown window.
- AUTHZ_DB_CONNECT_TIMEOUT_SECONDS: sqlite connect timeout.
- AUTHZ_DB_ERROR_STRICT: '0' to only count lock/busy errors as failures.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger("agent_authz.lockdown")


class StorageLockdownError(RuntimeError):
    """Raised while storage is in LOCKDOWN."""


@dataclass
class CircuitBreakerConfig:
    latency_threshold_ms: int = 1000
    failure_threshold: int = 2
    lockdown_seconds: int = 30
    connect_timeout_seconds: float = 5.0
    error_strict: bool = True

    @classmethod
    def from_env(cls) -> "CircuitBreakerConfig":
        def _get_int(name: str, default: int) -> int:
            try:
                return int(os.getenv(name, str(default)).strip())
            except ValueError:
                return default

        def _get_float(name: str, default: float) -> float:
            try:
                return float(os.getenv(name, str(default)).strip())
            except ValueError:
                return default

        latency = _get_int("AUTHZ_DB_LATENCY_THRESHOLD_MS", cls.latency_threshold_ms)
        failures = _get_int("AUTHZ_DB_FAILURE_THRESHOLD", cls.failure_threshold)
        lockdown = _get_int("AUTHZ_DB_LOCKDOWN_SECONDS", cls.lockdown_seconds)
        timeout = _get_float("AUTHZ_DB_CONNECT_TIMEOUT_SECONDS", cls.connect_timeout_seconds)
        strict = os.getenv("AUTHZ_DB_ERROR_STRICT", "1").strip().lower() not in ("0", "false", "no")

        if latency < 0:
            latency = cls.latency_threshold_ms
        return cls(
            latency_threshold_ms=latency,
            failure_threshold=max(1, failures),
            lockdown_seconds=max(1, lockdown),
            connect_timeout_seconds=timeout if timeout > 0 else 0.01,
            error_strict=strict,
        )


class DbCircuitBreaker:
    """Counts storage failures and slow operations; trips into LOCKDOWN."""

    def __init__(self, config: Optional[CircuitBreakerConfig] = None):
        self.config = config or CircuitBreakerConfig.from_env()
        self._lock = threading.Lock()
        self._failure_count = 0
        self._lockdown_until_monotonic: float = 0.0

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def is_lockdown_active(self) -> bool:
        return time.monotonic() < self._lockdown_until_monotonic

    def raise_if_lockdown(self) -> None:
        if self.is_lockdown_active():
            raise StorageLockdownError("LOCKDOWN_ACTIVE")

    def _trip(self) -> None:
        self._lockdown_until_monotonic = time.monotonic() + float(self.config.lockdown_seconds)
        self._failure_count = self.config.failure_threshold
        logger.warning("Storage circuit breaker tripped; lockdown for %ss", self.config.lockdown_seconds)

    def record_success(self) -> None:
        with self._lock:
            if self._failure_count > 0:
                self._failure_count -= 1

    def record_latency(self, elapsed_ms: float) -> None:
        if elapsed_ms >= float(self.config.latency_threshold_ms):
            with self._lock:
                self._failure_count += 1
                self._trip()

    def record_failure(self, exc: Optional[BaseException] = None) -> None:
        with self._lock:
            self._failure_count += 1
            if exc is not None:
                logger.warning("Storage failure recorded: %s", exc)
            if self._failure_count >= self.config.failure_threshold:
                self._trip()

    def should_treat_operational_error_as_failure(self, message: str) -> bool:
        if self.config.error_strict:
            return True
        msg = (message or "").lower()
        return "database is locked" in msg or "database is busy" in msg
