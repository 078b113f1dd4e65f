"""ZK Vault package.

A local credential vault that holds zero-knowledge attestations about its
user (email domain, country, age threshold) and releases them to relying
parties only with the user's consent:

- an encrypted 32-byte root secret with a BIP39 recovery phrase
- one attestation per claim type, each with an expiry
- per-origin, per-claim-type disclosure grants
- a request broker that routes disclosure requests through generation and
  consent surfaces, and optionally registers the user with a backend

Convenience imports
------------------
Importing the package has no side effects. These names resolve lazily:

    from zk_vault import RequestBroker, CredentialVault, create_app, parse_evidence
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any, Optional


def _read_version_from_pyproject() -> Optional[str]:
    """Read ``version = "..."`` from a repo-local pyproject.toml, if present."""
    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
    except OSError:
        return None
    m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
    return m.group(1) if m else None


__version__ = _read_version_from_pyproject() or "0.3.0"

__all__ = [
    "__version__",
    "RequestBroker",
    "CredentialVault",
    "create_app",
    "parse_evidence",
]

# name -> (module, attribute)
_LAZY_EXPORTS: dict = {
    "RequestBroker": ("zk_vault.broker", "RequestBroker"),
    "CredentialVault": ("zk_vault.vault", "CredentialVault"),
    "create_app": ("zk_vault.server", "create_app"),
    "parse_evidence": ("zk_vault.evidence", "parse_evidence"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        value = getattr(import_module(module_name), attr)
        globals()[name] = value
        return value
    raise AttributeError(f"module 'zk_vault' has no attribute {name!r}")


def __dir__() -> list:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
