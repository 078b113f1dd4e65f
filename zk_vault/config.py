"""Runtime configuration.

Two layers:

* ``BrokerConfig`` - deployment knobs read from the environment once at
  startup (``BrokerConfig.from_env()``). Bad values fall back to defaults.
* ``Settings`` - user preferences persisted in the vault store
  (``autoApprove``, ``expiryDays``); the user can change them at runtime.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Optional

logger = logging.getLogger("zk_vault.config")


MIN_PBKDF2_ITERATIONS = 100_000
DEFAULT_DEV_HOSTS = frozenset({"localhost", "127.0.0.1"})


def _env_float(name: str, default: float, lo: float, hi: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw.strip())
    except ValueError:
        return default
    return max(lo, min(value, hi))


@dataclass(frozen=True)
class BrokerConfig:
    db_path: str = "zk_vault.db"
    pbkdf2_iterations: int = MIN_PBKDF2_ITERATIONS
    dev_hosts: FrozenSet[str] = DEFAULT_DEV_HOSTS
    registration_timeout_seconds: float = 10.0
    surface_timeout_seconds: float = 300.0
    proof_engine_url: Optional[str] = None
    proof_engine_timeout_seconds: float = 120.0
    disclosure_wait_seconds: float = 600.0

    @classmethod
    def from_env(cls) -> "BrokerConfig":
        """Env:
          ZKV_DB_PATH, ZKV_PBKDF2_ITERATIONS, ZKV_DEV_HOSTS,
          ZKV_REGISTRATION_TIMEOUT_SECONDS, ZKV_SURFACE_TIMEOUT_SECONDS,
          ZKV_PROOF_ENGINE_URL, ZKV_PROOF_ENGINE_TIMEOUT_SECONDS,
          ZKV_DISCLOSURE_WAIT_SECONDS
        """
        try:
            iterations = int(os.getenv("ZKV_PBKDF2_ITERATIONS", str(cls.pbkdf2_iterations)).strip())
        except ValueError:
            iterations = cls.pbkdf2_iterations
        # Never weaker than the floor.
        iterations = max(MIN_PBKDF2_ITERATIONS, iterations)

        dev_raw = os.getenv("ZKV_DEV_HOSTS")
        if dev_raw is None:
            dev_hosts = DEFAULT_DEV_HOSTS
        else:
            dev_hosts = frozenset(h.strip().lower() for h in dev_raw.split(",") if h.strip())

        engine_url = (os.getenv("ZKV_PROOF_ENGINE_URL", "") or "").strip() or None

        return cls(
            db_path=(os.getenv("ZKV_DB_PATH", "") or "").strip() or cls.db_path,
            pbkdf2_iterations=iterations,
            dev_hosts=dev_hosts,
            registration_timeout_seconds=_env_float("ZKV_REGISTRATION_TIMEOUT_SECONDS", 10.0, 0.1, 120.0),
            surface_timeout_seconds=_env_float("ZKV_SURFACE_TIMEOUT_SECONDS", 300.0, 1.0, 24 * 3600.0),
            proof_engine_url=engine_url,
            proof_engine_timeout_seconds=_env_float("ZKV_PROOF_ENGINE_TIMEOUT_SECONDS", 120.0, 1.0, 3600.0),
            disclosure_wait_seconds=_env_float("ZKV_DISCLOSURE_WAIT_SECONDS", 600.0, 1.0, 24 * 3600.0),
        )


MIN_EXPIRY_DAYS = 1
MAX_EXPIRY_DAYS = 365


@dataclass(frozen=True)
class Settings:
    auto_approve: bool = False
    expiry_days: int = 30

    def __post_init__(self) -> None:
        days = int(self.expiry_days)
        object.__setattr__(self, "expiry_days", max(MIN_EXPIRY_DAYS, min(days, MAX_EXPIRY_DAYS)))
        object.__setattr__(self, "auto_approve", bool(self.auto_approve))

    @property
    def expiry_ms(self) -> int:
        return self.expiry_days * 24 * 60 * 60 * 1000

    def to_record(self) -> Dict[str, Any]:
        return {"autoApprove": self.auto_approve, "expiryDays": self.expiry_days}

    @classmethod
    def from_record(cls, record: Optional[Dict[str, Any]]) -> "Settings":
        if not isinstance(record, dict):
            return cls()
        defaults = cls()
        try:
            days = int(record.get("expiryDays", defaults.expiry_days))
        except (TypeError, ValueError):
            days = defaults.expiry_days
        return cls(auto_approve=bool(record.get("autoApprove", defaults.auto_approve)), expiry_days=days)

    def updated(self, *, auto_approve: Optional[bool] = None, expiry_days: Optional[int] = None) -> "Settings":
        return Settings(
            auto_approve=self.auto_approve if auto_approve is None else auto_approve,
            expiry_days=self.expiry_days if expiry_days is None else expiry_days,
        )


SETTINGS_KEY = "settings"


class SettingsStore:
    """Persisted ``Settings``; a missing or corrupt record yields defaults."""

    def __init__(self, store):
        self.store = store

    def load(self) -> Settings:
        raw = self.store.get_setting(SETTINGS_KEY)
        if raw is None:
            return Settings()
        try:
            return Settings.from_record(json.loads(raw))
        except ValueError:
            logger.warning("Corrupt settings record; using defaults")
            return Settings()

    def save(self, settings: Settings) -> Settings:
        self.store.put_setting(SETTINGS_KEY, json.dumps(settings.to_record(), sort_keys=True))
        return settings

    def update(self, *, auto_approve: Optional[bool] = None, expiry_days: Optional[int] = None) -> Settings:
        return self.save(self.load().updated(auto_approve=auto_approve, expiry_days=expiry_days))
