"""
Durable vault state (SQLite).

Logical layout:
    attestations[claim_type]         -> attestation record (JSON)
    permissions[origin][claim_type]  -> row present == granted
    settings[key]                    -> JSON value
    secrets[name]                    -> JSON value (encrypted envelope, or a
                                        legacy bare string awaiting migration)

The store deals in JSON text only; typed views live in the modules that own
each concern (attestations, permissions, vault). Everything held outside of
this database is volatile and may vanish with the process.

Storage properties:
- WAL + synchronous=FULL for durability across host restarts
- secure_delete zeroes freed pages (partial mitigation only; WAL frames and
  backups may still hold old pages)
- every operation runs behind a circuit breaker and fails closed
"""

from __future__ import annotations

import logging
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from .lockdown import StorageCircuit

logger = logging.getLogger("zk_vault.store")


class VaultStore:
    def __init__(self, db_path: str = "zk_vault.db", circuit: Optional[StorageCircuit] = None):
        self.db_path = str(db_path)
        parent = Path(self.db_path).parent
        if str(parent) not in ("", "."):
            parent.mkdir(parents=True, exist_ok=True)
        self.circuit = circuit or StorageCircuit()
        self._init_db()

    @contextmanager
    def _db(self, op_name: str) -> Iterator[sqlite3.Connection]:
        """Connection wrapper: commit on success, feed the circuit breaker."""
        self.circuit.raise_if_locked()
        start = time.monotonic()
        try:
            conn = sqlite3.connect(self.db_path, timeout=float(self.circuit.config.connect_timeout_seconds))
            try:
                with conn:
                    yield conn
            finally:
                conn.close()
        except sqlite3.OperationalError:
            logger.warning("Storage operation %s failed", op_name)
            self.circuit.record_failure()
            raise
        self.circuit.record_success((time.monotonic() - start) * 1000.0)

    def _init_db(self) -> None:
        with self._db("init") as conn:
            conn.execute("PRAGMA secure_delete = ON")
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = FULL")
            conn.execute("PRAGMA busy_timeout = 5000")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS attestations (
                claim_type TEXT PRIMARY KEY,
                record_json TEXT NOT NULL,
                generated_at INTEGER NOT NULL,
                expires_at INTEGER NOT NULL
            )
            """)

            conn.execute("""
            CREATE TABLE IF NOT EXISTS permissions (
                origin TEXT NOT NULL,
                claim_type TEXT NOT NULL,
                granted_at INTEGER NOT NULL,
                PRIMARY KEY (origin, claim_type)
            )
            """)

            conn.execute("""
            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value_json TEXT NOT NULL
            )
            """)

            conn.execute("""
            CREATE TABLE IF NOT EXISTS secrets (
                name TEXT PRIMARY KEY,
                value_json TEXT NOT NULL,
                updated_at INTEGER NOT NULL
            )
            """)

    # ---------------------------
    # Attestations
    # ---------------------------

    def get_attestation(self, claim_type: str) -> Optional[str]:
        with self._db("get_attestation") as conn:
            row = conn.execute(
                "SELECT record_json FROM attestations WHERE claim_type = ?", (claim_type,)
            ).fetchone()
        return row[0] if row else None

    def put_attestation(self, claim_type: str, record_json: str, generated_at: int, expires_at: int) -> None:
        with self._db("put_attestation") as conn:
            conn.execute(
                "INSERT OR REPLACE INTO attestations (claim_type, record_json, generated_at, expires_at) "
                "VALUES (?, ?, ?, ?)",
                (claim_type, record_json, int(generated_at), int(expires_at)),
            )

    def delete_attestation(self, claim_type: str) -> bool:
        with self._db("delete_attestation") as conn:
            cur = conn.execute("DELETE FROM attestations WHERE claim_type = ?", (claim_type,))
            return cur.rowcount > 0

    def list_attestations(self) -> List[Tuple[str, str]]:
        with self._db("list_attestations") as conn:
            rows = conn.execute(
                "SELECT claim_type, record_json FROM attestations ORDER BY claim_type"
            ).fetchall()
        return [(r[0], r[1]) for r in rows]

    # ---------------------------
    # Permissions
    # ---------------------------

    def insert_permission(self, origin: str, claim_type: str, granted_at: int) -> None:
        with self._db("insert_permission") as conn:
            conn.execute(
                "INSERT OR IGNORE INTO permissions (origin, claim_type, granted_at) VALUES (?, ?, ?)",
                (origin, claim_type, int(granted_at)),
            )

    def delete_permission(self, origin: str, claim_type: str) -> bool:
        with self._db("delete_permission") as conn:
            cur = conn.execute(
                "DELETE FROM permissions WHERE origin = ? AND claim_type = ?", (origin, claim_type)
            )
            return cur.rowcount > 0

    def delete_origin_permissions(self, origin: str) -> int:
        with self._db("delete_origin_permissions") as conn:
            cur = conn.execute("DELETE FROM permissions WHERE origin = ?", (origin,))
            return cur.rowcount

    def has_permission(self, origin: str, claim_type: str) -> bool:
        with self._db("has_permission") as conn:
            row = conn.execute(
                "SELECT 1 FROM permissions WHERE origin = ? AND claim_type = ?", (origin, claim_type)
            ).fetchone()
        return row is not None

    def permission_claims(self, origin: str) -> List[str]:
        with self._db("permission_claims") as conn:
            rows = conn.execute(
                "SELECT claim_type FROM permissions WHERE origin = ? ORDER BY claim_type", (origin,)
            ).fetchall()
        return [r[0] for r in rows]

    def permission_table(self) -> Dict[str, List[str]]:
        with self._db("permission_table") as conn:
            rows = conn.execute(
                "SELECT origin, claim_type FROM permissions ORDER BY origin, claim_type"
            ).fetchall()
        table: Dict[str, List[str]] = {}
        for origin, claim_type in rows:
            table.setdefault(origin, []).append(claim_type)
        return table

    # ---------------------------
    # Settings
    # ---------------------------

    def get_setting(self, key: str) -> Optional[str]:
        with self._db("get_setting") as conn:
            row = conn.execute("SELECT value_json FROM settings WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    def put_setting(self, key: str, value_json: str) -> None:
        with self._db("put_setting") as conn:
            conn.execute(
                "INSERT OR REPLACE INTO settings (key, value_json) VALUES (?, ?)", (key, value_json)
            )

    # ---------------------------
    # Secrets
    # ---------------------------

    def get_secret(self, name: str) -> Optional[str]:
        with self._db("get_secret") as conn:
            row = conn.execute("SELECT value_json FROM secrets WHERE name = ?", (name,)).fetchone()
        return row[0] if row else None

    def insert_secret_if_absent(self, name: str, value_json: str, updated_at: int) -> bool:
        """Create-once. Returns False if another writer got there first."""
        with self._db("insert_secret") as conn:
            cur = conn.execute(
                "INSERT OR IGNORE INTO secrets (name, value_json, updated_at) VALUES (?, ?, ?)",
                (name, value_json, int(updated_at)),
            )
            return cur.rowcount == 1

    def swap_secret(self, name: str, expected_json: str, new_json: str, updated_at: int) -> bool:
        """Compare-and-swap. Returns False if the stored value changed underneath."""
        with self._db("swap_secret") as conn:
            cur = conn.execute(
                "UPDATE secrets SET value_json = ?, updated_at = ? WHERE name = ? AND value_json = ?",
                (new_json, int(updated_at), name, expected_json),
            )
            return cur.rowcount == 1

    def replace_secret(self, name: str, value_json: str, updated_at: int) -> None:
        with self._db("replace_secret") as conn:
            conn.execute(
                "INSERT OR REPLACE INTO secrets (name, value_json, updated_at) VALUES (?, ?, ?)",
                (name, value_json, int(updated_at)),
            )
