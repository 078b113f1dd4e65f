"""Permission Registry: per-origin, per-claim-type disclosure grants.

A grant exists only as a stored row; absence means "not granted". Revoking
deletes the row so the table never accumulates dead entries. Grants are
recorded only by the Request Broker after an explicit user approval (or by
the user managing grants directly), never inferred from navigation.

All operations are idempotent.
"""

from __future__ import annotations

import logging
import time
from typing import Dict, Set
from urllib.parse import urlsplit

from .attestations import ClaimType
from .store import VaultStore

logger = logging.getLogger("zk_vault.permissions")


def _now_ms() -> int:
    return int(time.time() * 1000)


def normalize_origin(origin: str) -> str:
    """Reduce a URL or origin string to ``scheme://host[:port]``.

    Default ports are dropped so ``https://a.example`` and
    ``https://a.example:443`` share one grant set.
    """
    if not isinstance(origin, str) or not origin.strip():
        raise ValueError("origin must be a non-empty string")
    parts = urlsplit(origin.strip())
    if not parts.scheme or not parts.hostname:
        raise ValueError(f"origin must be an absolute URL: {origin!r}")
    scheme = parts.scheme.lower()
    host = parts.hostname.lower()
    if ":" in host:
        host = f"[{host}]"
    port = parts.port
    if port is None or (scheme, port) in (("https", 443), ("http", 80)):
        return f"{scheme}://{host}"
    return f"{scheme}://{host}:{port}"


class PermissionRegistry:
    def __init__(self, store: VaultStore):
        self.store = store

    def grant(self, origin: str, claim_type: ClaimType) -> None:
        origin = normalize_origin(origin)
        claim_type = ClaimType.parse(claim_type)
        self.store.insert_permission(origin, claim_type.value, _now_ms())
        logger.info("Permission granted: %s -> %s", origin, claim_type.value)

    def revoke(self, origin: str, claim_type: ClaimType) -> None:
        origin = normalize_origin(origin)
        claim_type = ClaimType.parse(claim_type)
        if self.store.delete_permission(origin, claim_type.value):
            logger.info("Permission revoked: %s -> %s", origin, claim_type.value)

    def revoke_all(self, origin: str) -> int:
        origin = normalize_origin(origin)
        removed = self.store.delete_origin_permissions(origin)
        if removed:
            logger.info("Revoked %d permission(s) for %s", removed, origin)
        return removed

    def is_granted(self, origin: str, claim_type: ClaimType) -> bool:
        return self.store.has_permission(normalize_origin(origin), ClaimType.parse(claim_type).value)

    def list_grants(self, origin: str) -> Set[ClaimType]:
        claims = set()
        for value in self.store.permission_claims(normalize_origin(origin)):
            try:
                claims.add(ClaimType(value))
            except ValueError:
                logger.warning("Ignoring stored grant with unknown claim type")
        return claims

    def all_grants(self) -> Dict[str, Set[ClaimType]]:
        out: Dict[str, Set[ClaimType]] = {}
        known = {c.value for c in ClaimType}
        for origin, claims in self.store.permission_table().items():
            out[origin] = {ClaimType(c) for c in claims if c in known}
        return out
