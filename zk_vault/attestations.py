"""Attestation Store: at most one attestation per claim type, each with expiry.

Records are replaced wholesale; there is no partial update. Only public
fields ever reach storage: ``public_claim`` is filtered through a per-claim
allowlist so private evidence (full email address, coordinates, birth date)
cannot be persisted by accident.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .store import VaultStore

logger = logging.getLogger("zk_vault.attestations")


class ClaimType(str, Enum):
    COUNTRY = "country"
    EMAIL_DOMAIN = "email_domain"
    AGE = "age"

    @classmethod
    def parse(cls, value: Any) -> "ClaimType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value))
        except ValueError:
            raise ValueError(f"Unknown claim type: {value!r}") from None


PUBLIC_FIELDS: Dict[ClaimType, Tuple[str, ...]] = {
    ClaimType.COUNTRY: ("countryCode", "countryName", "commitment"),
    ClaimType.EMAIL_DOMAIN: ("domain", "domainHash", "commitment"),
    ClaimType.AGE: ("minAge", "isOver", "commitment"),
}

# What the consent surface lists as withheld from the relying party.
HIDDEN_FIELDS: Dict[ClaimType, Tuple[str, ...]] = {
    ClaimType.COUNTRY: ("precise location",),
    ClaimType.EMAIL_DOMAIN: ("email address", "message content", "DKIM signature"),
    ClaimType.AGE: ("date of birth",),
}


def _now_ms() -> int:
    return int(time.time() * 1000)


def public_fields_only(claim_type: ClaimType, claim: Dict[str, Any]) -> Dict[str, Any]:
    allowed = PUBLIC_FIELDS[claim_type]
    return {k: claim[k] for k in allowed if k in claim}


@dataclass(frozen=True)
class Attestation:
    claim_type: ClaimType
    proof_bytes: str
    public_claim: Dict[str, Any] = field(default_factory=dict)
    generated_at: int = 0
    expires_at: int = 0

    def is_expired(self, now_ms: Optional[int] = None) -> bool:
        now = _now_ms() if now_ms is None else now_ms
        return now > self.expires_at

    @property
    def commitment(self) -> Optional[str]:
        value = self.public_claim.get("commitment")
        return str(value) if value is not None else None

    def public_view(self) -> Dict[str, Any]:
        """The only shape ever released to an origin."""
        return {
            "type": self.claim_type.value,
            "data": self.proof_bytes,
            "publicInputs": dict(self.public_claim),
            "generatedAt": self.generated_at,
            "expiresAt": self.expires_at,
        }

    def to_record(self) -> Dict[str, Any]:
        return self.public_view()

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Attestation":
        claim_type = ClaimType.parse(record["type"])
        proof = record["data"]
        if not isinstance(proof, str) or not proof:
            raise ValueError("attestation proof must be a non-empty string")
        public = record.get("publicInputs") or {}
        if not isinstance(public, dict):
            raise ValueError("publicInputs must be an object")
        return cls(
            claim_type=claim_type,
            proof_bytes=proof,
            public_claim=public_fields_only(claim_type, public),
            generated_at=int(record["generatedAt"]),
            expires_at=int(record["expiresAt"]),
        )

    def describe(self) -> str:
        claim = self.public_claim
        if self.claim_type is ClaimType.EMAIL_DOMAIN:
            return f"Your email domain: {claim.get('domain')}"
        if self.claim_type is ClaimType.COUNTRY:
            return f"Your country: {claim.get('countryCode')}"
        return f"That you are over {claim.get('minAge')}"

    def hidden_fields(self) -> List[str]:
        return list(HIDDEN_FIELDS[self.claim_type])


def stamp(
    claim_type: ClaimType,
    proof_bytes: str,
    public_claim: Dict[str, Any],
    *,
    expiry_ms: int,
    now_ms: Optional[int] = None,
) -> Attestation:
    now = _now_ms() if now_ms is None else now_ms
    return Attestation(
        claim_type=claim_type,
        proof_bytes=proof_bytes,
        public_claim=public_fields_only(claim_type, public_claim),
        generated_at=now,
        expires_at=now + int(expiry_ms),
    )


class AttestationStore:
    def __init__(self, store: VaultStore):
        self.store = store

    def get(self, claim_type: ClaimType) -> Optional[Attestation]:
        claim_type = ClaimType.parse(claim_type)
        raw = self.store.get_attestation(claim_type.value)
        if raw is None:
            return None
        try:
            return Attestation.from_record(json.loads(raw))
        except (ValueError, KeyError, TypeError):
            logger.warning("Corrupt %s attestation record; treating as absent", claim_type.value)
            return None

    def put(self, attestation: Attestation) -> None:
        self.store.put_attestation(
            attestation.claim_type.value,
            json.dumps(attestation.to_record(), sort_keys=True, separators=(",", ":")),
            attestation.generated_at,
            attestation.expires_at,
        )
        logger.info("Stored %s attestation (expires_at=%d)", attestation.claim_type.value, attestation.expires_at)

    def delete(self, claim_type: ClaimType) -> bool:
        claim_type = ClaimType.parse(claim_type)
        removed = self.store.delete_attestation(claim_type.value)
        if removed:
            logger.info("Deleted %s attestation", claim_type.value)
        return removed

    def list_all(self) -> Dict[str, Attestation]:
        out: Dict[str, Attestation] = {}
        for claim_type, raw in self.store.list_attestations():
            try:
                out[claim_type] = Attestation.from_record(json.loads(raw))
            except (ValueError, KeyError, TypeError):
                logger.warning("Corrupt %s attestation record; skipping", claim_type)
        return out
