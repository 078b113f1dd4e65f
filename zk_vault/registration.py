"""Registration Client: deliver an approved attestation to a relying-party backend.

Wire call:
    POST <backendUrl>
    {"<claim>Proof": {"identityHash": ..., "proofHash": ..., <public fields>}}
    -> 2xx {"user": ..., "token": ...}

Outcome classes:
    success            -> RegistrationResult(user, token)
    benign duplicate   -> RegistrationSkipped (non-2xx whose JSON error says
                          "already used" / "already registered")
    anything else      -> RegistrationError(cause)

Only the identity handle, the public commitment and public claim fields are
sent. Neither the request payload nor the returned token is logged.
"""

from __future__ import annotations

import json
import logging
import re
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Optional
from urllib.parse import urlsplit

from .attestations import Attestation, ClaimType
from .config import DEFAULT_DEV_HOSTS
from .errors import RegistrationCause, RegistrationError
from .vault import CredentialVault

logger = logging.getLogger("zk_vault.registration")

_ALREADY_REGISTERED = re.compile(r"already\s+(?:used|registered)", re.IGNORECASE)


@dataclass(frozen=True)
class RegistrationResult:
    user: Any
    token: str

    def as_dict(self) -> Dict[str, Any]:
        return {"user": self.user, "token": self.token}


class RegistrationSkipped(Exception):
    """The backend already knows this proof; the user is presumably registered."""


def validate_backend_url(backend_url: str, dev_hosts: FrozenSet[str] = DEFAULT_DEV_HOSTS) -> str:
    """https anywhere; plain http only for allowlisted development hosts."""
    if not isinstance(backend_url, str) or not backend_url.strip():
        raise RegistrationError(RegistrationCause.INVALID_BACKEND_URL, "Backend URL is required")
    try:
        parts = urlsplit(backend_url.strip())
        host = (parts.hostname or "").lower()
    except ValueError:
        raise RegistrationError(RegistrationCause.INVALID_BACKEND_URL, "Backend URL does not parse") from None
    if not host:
        raise RegistrationError(RegistrationCause.INVALID_BACKEND_URL, "Backend URL must be absolute")
    scheme = parts.scheme.lower()
    if scheme == "https":
        return backend_url.strip()
    if scheme == "http" and host in dev_hosts:
        return backend_url.strip()
    raise RegistrationError(
        RegistrationCause.INVALID_BACKEND_URL,
        "Backend URL must use https (http is allowed only for local development hosts)",
        scheme=scheme,
    )


def country_flag(country_code: str) -> str:
    """ISO 3166 alpha-2 code -> regional-indicator flag emoji ("US" -> U+1F1FA U+1F1F8)."""
    code = (country_code or "").strip().upper()
    if len(code) != 2 or not code.isalpha():
        return ""
    return "".join(chr(0x1F1E6 + ord(c) - ord("A")) for c in code)


def build_payload(attestation: Attestation, identity_handle: str) -> Dict[str, Any]:
    proof_hash = attestation.commitment
    if not proof_hash:
        raise RegistrationError(RegistrationCause.MISSING_FIELDS, "Attestation has no public commitment")
    claim = attestation.public_claim
    base = {"identityHash": identity_handle, "proofHash": proof_hash}

    if attestation.claim_type is ClaimType.COUNTRY:
        code = str(claim.get("countryCode", ""))
        return {"countryProof": dict(base, code=code, flag=country_flag(code), name=claim.get("countryName"))}
    if attestation.claim_type is ClaimType.EMAIL_DOMAIN:
        return {"emailProof": dict(base, domain=claim.get("domain"))}
    if attestation.claim_type is ClaimType.AGE:
        return {"ageProof": dict(base, minAge=claim.get("minAge"))}
    raise RegistrationError(RegistrationCause.UNSUPPORTED_CLAIM, "Unsupported claim type for registration")


def _error_text(body: bytes) -> Optional[str]:
    try:
        decoded = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None
    if isinstance(decoded, dict) and decoded.get("error") is not None:
        return str(decoded["error"])
    return None


class RegistrationClient:
    def __init__(
        self,
        vault: CredentialVault,
        *,
        timeout_seconds: float = 10.0,
        dev_hosts: FrozenSet[str] = DEFAULT_DEV_HOSTS,
    ):
        self.vault = vault
        self.timeout_seconds = float(timeout_seconds)
        self.dev_hosts = frozenset(dev_hosts)

    def register(self, attestation: Attestation, backend_url: str) -> RegistrationResult:
        url = validate_backend_url(backend_url, self.dev_hosts)
        payload = build_payload(attestation, self.vault.identity_handle())
        body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        req = urllib.request.Request(
            url,
            data=body,
            headers={"Content-Type": "application/json", "Accept": "application/json"},
            method="POST",
        )

        logger.info("Registering %s attestation with %s", attestation.claim_type.value, urlsplit(url).netloc)
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                status = int(getattr(resp, "status", 200))
                resp_body = resp.read()
        except urllib.error.HTTPError as e:
            try:
                err_body = e.read()
            except OSError:
                err_body = b""
            error_text = _error_text(err_body)
            if error_text and _ALREADY_REGISTERED.search(error_text):
                logger.info("Backend reports proof already registered (HTTP %s); skipping", e.code)
                raise RegistrationSkipped(error_text) from None
            raise RegistrationError(
                RegistrationCause.HTTP_STATUS,
                f"Registration failed: HTTP {e.code}",
                status=int(e.code),
                backend_error=(error_text or "")[:200],
            ) from None
        except (urllib.error.URLError, OSError) as e:
            raise RegistrationError(
                RegistrationCause.NETWORK,
                f"Registration request failed: {type(e).__name__}",
            ) from None

        if not 200 <= status < 300:
            raise RegistrationError(RegistrationCause.HTTP_STATUS, f"Registration failed: HTTP {status}", status=status)

        try:
            result = json.loads(resp_body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            raise RegistrationError(RegistrationCause.INVALID_RESPONSE, "Registration response is not JSON") from None
        if not isinstance(result, dict):
            raise RegistrationError(RegistrationCause.INVALID_RESPONSE, "Registration response must be an object")
        if not result.get("user") or not result.get("token"):
            raise RegistrationError(
                RegistrationCause.MISSING_FIELDS,
                "Registration failed: missing user or token",
                backend_error=str(result.get("error") or "")[:200],
            )
        return RegistrationResult(user=result["user"], token=str(result["token"]))
