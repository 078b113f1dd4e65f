"""
Proof Engine boundary and attestation generation.

The Proof Engine is an external black box:

    generate(claim_type, private_evidence) -> ProofResult{success, public_claim, proof_bytes, error}

``AttestationGenerator`` wraps it with the vault's policy:
- email evidence is parsed and structurally validated before the engine sees it
- private evidence (raw email, DKIM signature, coordinates, birth date) is
  scrubbed from the caller's mapping as soon as the engine returns, success
  or failure, and is never persisted or logged
- the resulting attestation is stamped with the configured expiry and replaces
  any previous attestation of the same claim type
"""

from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Dict, MutableMapping, Optional, Protocol

from . import metrics
from .attestations import Attestation, AttestationStore, ClaimType, stamp
from .config import SettingsStore
from .errors import ProofGenerationError, VaultError, vault_error, ZKV_E_BAD_REQUEST
from .evidence import parse_evidence, scrub

logger = logging.getLogger("zk_vault.engine")


@dataclass
class ProofResult:
    success: bool
    public_claim: Dict[str, Any] = field(default_factory=dict)
    proof_bytes: str = ""
    error: Optional[str] = None


class ProofEngine(Protocol):
    def generate(self, claim_type: ClaimType, private_evidence: Dict[str, Any]) -> ProofResult:
        ...


@dataclass
class HttpProofEngine:
    """Prover reached over HTTP.

    Request:  {"claimType": ..., "evidence": {...}}
    Response: {"success": bool, "publicClaim": {...}, "proofBytes": "<hex>", "error": "..."}

    Every transport/parse problem maps to an unsuccessful result. With no URL
    configured the engine refuses every request.
    """

    url: Optional[str]
    timeout_seconds: float = 120.0

    def generate(self, claim_type: ClaimType, private_evidence: Dict[str, Any]) -> ProofResult:
        if not self.url:
            return ProofResult(success=False, error="PROOF_ENGINE_NOT_CONFIGURED")

        body = json.dumps({"claimType": claim_type.value, "evidence": private_evidence}).encode("utf-8")
        req = urllib.request.Request(
            self.url,
            data=body,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                decoded = json.loads(resp.read().decode("utf-8"))
        except urllib.error.HTTPError as e:
            return ProofResult(success=False, error=f"PROOF_ENGINE_HTTP_ERROR: HTTP {e.code}")
        except (urllib.error.URLError, OSError, ValueError) as e:
            return ProofResult(success=False, error=f"PROOF_ENGINE_ERROR: {type(e).__name__}")
        if not isinstance(decoded, dict):
            return ProofResult(success=False, error="PROOF_ENGINE_INVALID_RESPONSE")
        public_claim = decoded.get("publicClaim")
        return ProofResult(
            success=bool(decoded.get("success")),
            public_claim=public_claim if isinstance(public_claim, dict) else {},
            proof_bytes=str(decoded.get("proofBytes") or ""),
            error=str(decoded["error"]) if decoded.get("error") else None,
        )


def _require(evidence: MutableMapping[str, Any], *keys: str) -> None:
    missing = [k for k in keys if evidence.get(k) in (None, "")]
    if missing:
        raise vault_error(ZKV_E_BAD_REQUEST, "Missing private evidence fields", http_status=422, fields=missing)


class AttestationGenerator:
    def __init__(self, engine: ProofEngine, attestations: AttestationStore, settings: SettingsStore):
        self.engine = engine
        self.attestations = attestations
        self.settings = settings

    def generate(self, claim_type: ClaimType, private_evidence: MutableMapping[str, Any]) -> Attestation:
        """Run the Proof Engine and persist the resulting attestation.

        ``private_evidence`` is cleared before this returns or raises.
        """
        claim_type = ClaimType.parse(claim_type)
        try:
            if claim_type is ClaimType.EMAIL_DOMAIN:
                result, expected_domain = self._prove_email(private_evidence)
            else:
                result, expected_domain = self._prove_plain(claim_type, private_evidence), None
        except VaultError:
            metrics.record_generation(claim_type.value, "rejected")
            raise
        except Exception:
            metrics.record_generation(claim_type.value, "error")
            raise
        finally:
            private_evidence.clear()

        if not result.success:
            metrics.record_generation(claim_type.value, "failed")
            raise ProofGenerationError((result.error or "Proof generation failed")[:200])
        if not result.proof_bytes:
            metrics.record_generation(claim_type.value, "failed")
            raise ProofGenerationError("Proof Engine returned no proof")
        if expected_domain is not None and str(result.public_claim.get("domain", "")).lower() != expected_domain:
            metrics.record_generation(claim_type.value, "failed")
            raise ProofGenerationError("Proof Engine attested a different domain than the evidence")

        attestation = stamp(
            claim_type,
            result.proof_bytes,
            result.public_claim,
            expiry_ms=self.settings.load().expiry_ms,
        )
        self.attestations.put(attestation)
        metrics.record_generation(claim_type.value, "ok")
        logger.info("Generated %s attestation", claim_type.value)
        return attestation

    def _prove_email(self, evidence: MutableMapping[str, Any]):
        raw = evidence.pop("emlContent", None)
        triple = parse_evidence(raw)
        raw = None
        engine_input = triple.to_engine_input()
        try:
            return self.engine.generate(ClaimType.EMAIL_DOMAIN, engine_input), triple.domain
        finally:
            engine_input.clear()
            triple = scrub(triple)

    def _prove_plain(self, claim_type: ClaimType, evidence: MutableMapping[str, Any]) -> ProofResult:
        if claim_type is ClaimType.COUNTRY:
            if evidence.get("countryCode") in (None, ""):
                _require(evidence, "latitude", "longitude")
        else:
            _require(evidence, "birthDate", "minAge")
        engine_input = dict(evidence)
        try:
            return self.engine.generate(claim_type, engine_input)
        finally:
            engine_input.clear()
