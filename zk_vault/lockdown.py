"""Storage circuit breaker.

The vault's durable state (encrypted root secret, attestations, permission
grants, settings) lives in SQLite. If that storage becomes slow or starts
failing, the broker must stop answering disclosure requests rather than
act on a partial view (for example, treating a missing grant table as "no
grants" is fine, but treating a failing read as "no attestation" would
trigger needless regeneration).

After ``failure_threshold`` failures, or one operation slower than
``latency_threshold_ms``, every store operation raises
``StorageLockdownError`` until the lockdown window elapses.
"""

from __future__ import annotations

import os
import threading
import time
from dataclasses import dataclass
from typing import Optional


class StorageLockdownError(RuntimeError):
    """Raised while vault storage is locked down."""


@dataclass
class CircuitConfig:
    """Environment variables:
    - ZKV_DB_LATENCY_THRESHOLD_MS
    - ZKV_DB_FAILURE_THRESHOLD
    - ZKV_DB_LOCKDOWN_SECONDS
    - ZKV_DB_CONNECT_TIMEOUT_SECONDS
    """

    latency_threshold_ms: int = 2000
    failure_threshold: int = 3
    lockdown_seconds: int = 30
    connect_timeout_seconds: float = 5.0

    @classmethod
    def from_env(cls) -> "CircuitConfig":
        def _num(name: str, default, cast):
            try:
                return cast(os.getenv(name, str(default)).strip())
            except (AttributeError, ValueError):
                return default

        latency = _num("ZKV_DB_LATENCY_THRESHOLD_MS", cls.latency_threshold_ms, int)
        failures = _num("ZKV_DB_FAILURE_THRESHOLD", cls.failure_threshold, int)
        lockdown = _num("ZKV_DB_LOCKDOWN_SECONDS", cls.lockdown_seconds, int)
        timeout = _num("ZKV_DB_CONNECT_TIMEOUT_SECONDS", cls.connect_timeout_seconds, float)

        return cls(
            latency_threshold_ms=latency if latency > 0 else cls.latency_threshold_ms,
            failure_threshold=max(1, failures),
            lockdown_seconds=max(1, lockdown),
            connect_timeout_seconds=timeout if timeout > 0 else 0.01,
        )


class StorageCircuit:
    """Counts storage failures and opens a lockdown window when tripped.

    Shared by the event loop and worker threads; counters change under a lock.
    """

    def __init__(self, config: Optional[CircuitConfig] = None):
        self.config = config or CircuitConfig.from_env()
        self._lock = threading.Lock()
        self._failures = 0
        self._locked_until = 0.0

    @property
    def failures(self) -> int:
        with self._lock:
            return self._failures

    def is_locked(self) -> bool:
        with self._lock:
            return time.monotonic() < self._locked_until

    def raise_if_locked(self) -> None:
        if self.is_locked():
            raise StorageLockdownError("LOCKDOWN_ACTIVE")

    def _trip(self) -> None:
        # caller holds self._lock
        self._locked_until = time.monotonic() + float(self.config.lockdown_seconds)
        self._failures = self.config.failure_threshold

    def record_success(self, elapsed_ms: float = 0.0) -> None:
        with self._lock:
            if elapsed_ms >= float(self.config.latency_threshold_ms):
                self._trip()
            elif self._failures > 0:
                self._failures -= 1

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            if self._failures >= self.config.failure_threshold:
                self._trip()
