"""Stable error taxonomy for ZK Vault.

Every failure the broker surfaces carries a machine-readable ``code`` so that
the HTTP layer, the CLI and relying parties can branch on it without parsing
messages.

Rules:
- Messages and details never carry raw evidence, secrets, DKIM signatures,
  mnemonic words or email addresses.
- Input validation failures get a specific subclass; policy outcomes of the
  disclosure state machine are reported through ``DisclosureError``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict


# Evidence (DKIM email parsing)
ZKV_E_NOT_AN_EMAIL = "ZKV_E_NOT_AN_EMAIL"
ZKV_E_MISSING_DOMAIN = "ZKV_E_MISSING_DOMAIN"
ZKV_E_MISSING_DKIM_SIGNATURE = "ZKV_E_MISSING_DKIM_SIGNATURE"
ZKV_E_MALFORMED_DKIM_SIGNATURE = "ZKV_E_MALFORMED_DKIM_SIGNATURE"
ZKV_E_UNSUPPORTED_DKIM_VERSION = "ZKV_E_UNSUPPORTED_DKIM_VERSION"
ZKV_E_UNSUPPORTED_DKIM_ALGORITHM = "ZKV_E_UNSUPPORTED_DKIM_ALGORITHM"

# Mnemonic backup
ZKV_E_MNEMONIC_INVALID = "ZKV_E_MNEMONIC_INVALID"

# Registration with relying-party backends
ZKV_E_INVALID_BACKEND_URL = "ZKV_E_INVALID_BACKEND_URL"
ZKV_E_REGISTRATION_FAILED = "ZKV_E_REGISTRATION_FAILED"

# Disclosure outcomes
ZKV_E_PROOF_NOT_FOUND = "ZKV_E_PROOF_NOT_FOUND"
ZKV_E_PERMISSION_DENIED = "ZKV_E_PERMISSION_DENIED"
ZKV_E_USER_CANCELLED = "ZKV_E_USER_CANCELLED"
ZKV_E_REQUEST_NOT_FOUND = "ZKV_E_REQUEST_NOT_FOUND"
ZKV_E_DUPLICATE_REQUEST = "ZKV_E_DUPLICATE_REQUEST"

# Proof generation
ZKV_E_PROOF_GENERATION_FAILED = "ZKV_E_PROOF_GENERATION_FAILED"

# Caller authentication
ZKV_E_UNAUTHORIZED = "ZKV_E_UNAUTHORIZED"
ZKV_E_ORIGIN_MISMATCH = "ZKV_E_ORIGIN_MISMATCH"

# Storage / generic
ZKV_E_LOCKDOWN_ACTIVE = "ZKV_E_LOCKDOWN_ACTIVE"
ZKV_E_BAD_REQUEST = "ZKV_E_BAD_REQUEST"
ZKV_E_INTERNAL = "ZKV_E_INTERNAL"


@dataclass
class VaultError(Exception):
    """Base ZK Vault exception with stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 400
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
            "http_status": int(self.http_status),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


def vault_error(
    code: str,
    message: str,
    *,
    retryable: bool = False,
    http_status: int = 400,
    **details: Any,
) -> VaultError:
    return VaultError(code=code, message=message, retryable=retryable, http_status=http_status, details=details)


class EvidenceErrorKind(str, Enum):
    NOT_AN_EMAIL = "NotAnEmail"
    MISSING_DOMAIN = "MissingDomain"
    MISSING_DKIM_SIGNATURE = "MissingDkimSignature"
    MALFORMED_DKIM_SIGNATURE = "MalformedDkimSignature"
    UNSUPPORTED_DKIM_VERSION = "UnsupportedDkimVersion"
    UNSUPPORTED_DKIM_ALGORITHM = "UnsupportedDkimAlgorithm"


_EVIDENCE_CODES = {
    EvidenceErrorKind.NOT_AN_EMAIL: ZKV_E_NOT_AN_EMAIL,
    EvidenceErrorKind.MISSING_DOMAIN: ZKV_E_MISSING_DOMAIN,
    EvidenceErrorKind.MISSING_DKIM_SIGNATURE: ZKV_E_MISSING_DKIM_SIGNATURE,
    EvidenceErrorKind.MALFORMED_DKIM_SIGNATURE: ZKV_E_MALFORMED_DKIM_SIGNATURE,
    EvidenceErrorKind.UNSUPPORTED_DKIM_VERSION: ZKV_E_UNSUPPORTED_DKIM_VERSION,
    EvidenceErrorKind.UNSUPPORTED_DKIM_ALGORITHM: ZKV_E_UNSUPPORTED_DKIM_ALGORITHM,
}


class EvidenceError(VaultError):
    """Raised by the evidence parser. ``kind`` names the failed check."""

    def __init__(self, kind: EvidenceErrorKind, message: str, **details: Any):
        super().__init__(code=_EVIDENCE_CODES[kind], message=message, http_status=422, details=details)
        self.kind = kind


class MnemonicError(VaultError):
    """Raised when a recovery phrase (or the secret to encode) is invalid."""

    def __init__(self, reason: str, message: str, **details: Any):
        super().__init__(code=ZKV_E_MNEMONIC_INVALID, message=message, http_status=422,
                         details=dict(details, reason=reason))
        self.reason = reason


class RegistrationCause(str, Enum):
    INVALID_BACKEND_URL = "InvalidBackendUrl"
    HTTP_STATUS = "HttpStatus"
    MISSING_FIELDS = "MissingFields"
    INVALID_RESPONSE = "InvalidResponse"
    NETWORK = "Network"
    UNSUPPORTED_CLAIM = "UnsupportedClaim"


class RegistrationError(VaultError):
    """Fatal registration failure. Never blocks attestation delivery."""

    def __init__(self, cause: RegistrationCause, message: str, **details: Any):
        code = ZKV_E_INVALID_BACKEND_URL if cause is RegistrationCause.INVALID_BACKEND_URL else ZKV_E_REGISTRATION_FAILED
        super().__init__(code=code, message=message, retryable=cause is RegistrationCause.NETWORK,
                         http_status=502, details=dict(details, cause=cause.value))
        self.cause = cause


class DenialReason(str, Enum):
    PROOF_NOT_FOUND = "ProofNotFound"
    PERMISSION_DENIED = "PermissionDenied"
    USER_CANCELLED = "UserCancelled"
    REQUEST_NOT_FOUND = "RequestNotFound"


_DENIAL_CODES = {
    DenialReason.PROOF_NOT_FOUND: (ZKV_E_PROOF_NOT_FOUND, 404),
    DenialReason.PERMISSION_DENIED: (ZKV_E_PERMISSION_DENIED, 403),
    DenialReason.USER_CANCELLED: (ZKV_E_USER_CANCELLED, 409),
    DenialReason.REQUEST_NOT_FOUND: (ZKV_E_REQUEST_NOT_FOUND, 404),
}


class DisclosureError(VaultError):
    """A disclosure request ended without an attestation being released."""

    def __init__(self, reason: DenialReason, message: str, **details: Any):
        code, status = _DENIAL_CODES[reason]
        super().__init__(code=code, message=message, http_status=status, details=details)
        self.reason = reason


class ProofGenerationError(VaultError):
    def __init__(self, message: str, **details: Any):
        super().__init__(code=ZKV_E_PROOF_GENERATION_FAILED, message=message, retryable=True,
                         http_status=502, details=details)
