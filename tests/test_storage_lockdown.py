import sqlite3
import threading

import pytest

from zk_vault.attestations import AttestationStore, ClaimType
from zk_vault.lockdown import CircuitConfig, StorageCircuit, StorageLockdownError
from zk_vault.store import VaultStore


def test_storage_lockdown_trips_on_operational_error(tmp_path, monkeypatch):
    monkeypatch.setenv("ZKV_DB_CONNECT_TIMEOUT_SECONDS", "0.01")
    monkeypatch.setenv("ZKV_DB_FAILURE_THRESHOLD", "1")
    monkeypatch.setenv("ZKV_DB_LOCKDOWN_SECONDS", "60")

    store = VaultStore(db_path=str(tmp_path / "vault.db"))

    # Simulate a busy/locked database without relying on platform WAL behavior.
    import zk_vault.store as store_mod

    def _boom(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(store_mod.sqlite3, "connect", _boom)

    with pytest.raises(sqlite3.OperationalError):
        store.get_attestation("age")

    # Fail closed for everything during the lockdown window.
    with pytest.raises(StorageLockdownError):
        AttestationStore(store).get(ClaimType.AGE)
    with pytest.raises(StorageLockdownError):
        store.has_permission("https://a.example", "age")


def test_slow_operation_trips_the_circuit():
    circuit = StorageCircuit(CircuitConfig(latency_threshold_ms=100, failure_threshold=3, lockdown_seconds=60))
    circuit.record_success(5.0)
    assert not circuit.is_locked()
    circuit.record_success(150.0)
    assert circuit.is_locked()
    with pytest.raises(StorageLockdownError):
        circuit.raise_if_locked()


def test_failures_decay_on_success():
    circuit = StorageCircuit(CircuitConfig(failure_threshold=2, lockdown_seconds=60))
    circuit.record_failure()
    circuit.record_success(1.0)
    circuit.record_failure()
    assert not circuit.is_locked()
    circuit.record_failure()
    assert circuit.is_locked()


def test_bad_env_values_fall_back(monkeypatch):
    monkeypatch.setenv("ZKV_DB_FAILURE_THRESHOLD", "many")
    monkeypatch.setenv("ZKV_DB_LOCKDOWN_SECONDS", "-5")
    cfg = CircuitConfig.from_env()
    assert cfg.failure_threshold == 3
    assert cfg.lockdown_seconds == 1


def test_concurrent_failures_are_all_counted():
    circuit = StorageCircuit(CircuitConfig(failure_threshold=801, lockdown_seconds=60))

    def _fail():
        for _ in range(100):
            circuit.record_failure()

    threads = [threading.Thread(target=_fail) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert circuit.failures == 800
    assert not circuit.is_locked()
    circuit.record_failure()
    assert circuit.is_locked()
