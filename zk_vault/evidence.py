"""
Evidence Parser: DKIM-bearing email -> (domain, dkim_signature, auth_results).

The parser only checks the *structure* of the DKIM-Signature header; the
cryptographic check happens inside the Proof Engine.

Privacy:
- input is processed in memory only
- nothing but the resulting domain is ever logged
- callers scrub the raw text and the triple once the Proof Engine returns
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from typing import Dict, Optional

from .errors import EvidenceError, EvidenceErrorKind

logger = logging.getLogger("zk_vault.evidence")

_HEADER_END = re.compile(r"\r?\n\r?\n")
_FOLD = re.compile(r"\r?\n[\t ]+")
_HEADER_LINE = re.compile(r"^[!-9;-~]+:", re.MULTILINE)

# user@domain, optionally wrapped as "Display Name <user@domain>". The TLD must
# end the domain, so "a@x.co1" is not read as x.co.
_ADDRESS = r".*?<?[a-zA-Z0-9._%+-]+@([a-zA-Z0-9.-]+\.[a-zA-Z]{2,})(?![a-zA-Z0-9.-])>?"
_RECIPIENT = re.compile(r"^(?:To|Delivered-To):[ \t]*" + _ADDRESS, re.IGNORECASE | re.MULTILINE)
_SENDER = re.compile(r"^From:[ \t]*" + _ADDRESS, re.IGNORECASE | re.MULTILINE)

REQUIRED_DKIM_TAGS = ("v", "a", "d", "b")
SUPPORTED_DKIM_ALGORITHMS = ("rsa-sha256", "rsa-sha1")


@dataclass(frozen=True)
class EvidenceTriple:
    """Ephemeral claim input. Never stored."""

    domain: str
    dkim_signature: Optional[str]
    auth_results: Optional[str]

    def to_engine_input(self) -> Dict[str, Optional[str]]:
        return {
            "domain": self.domain,
            "dkimSignature": self.dkim_signature,
            "authResults": self.auth_results,
        }


def scrub(triple: EvidenceTriple) -> EvidenceTriple:
    """Drop the signature-bearing fields, keeping only the public domain."""
    return replace(triple, dkim_signature=None, auth_results=None)


def split_headers(raw_email: str) -> str:
    """Header block up to the first blank line (or the whole input)."""
    m = _HEADER_END.search(raw_email)
    return raw_email if m is None else raw_email[: m.start()]


def find_header(headers: str, name: str) -> Optional[str]:
    """Value of the first ``name`` header, unfolded and trimmed."""
    pattern = re.compile(
        r"^" + re.escape(name) + r":[ \t]*(.*?)(?=\r?\n(?![\t ])|\Z)",
        re.IGNORECASE | re.MULTILINE | re.DOTALL,
    )
    m = pattern.search(headers)
    if m is None:
        return None
    return _FOLD.sub(" ", m.group(1)).strip()


def extract_domain(headers: str) -> str:
    """Recipient domain first (received mail), sender domain as fallback."""
    for source, pattern in (("recipient", _RECIPIENT), ("sender", _SENDER)):
        m = pattern.search(headers)
        if m:
            domain = m.group(1).strip().lower()
            logger.debug("Extracted domain %s from %s header", domain, source)
            return domain
    raise EvidenceError(
        EvidenceErrorKind.MISSING_DOMAIN,
        "Could not extract email domain from To, Delivered-To, or From headers",
    )


def _dkim_tags(signature: str) -> Dict[str, str]:
    tags: Dict[str, str] = {}
    for part in signature.split(";"):
        if "=" not in part:
            continue
        key, _, value = part.partition("=")
        key = key.strip().lower()
        if key and key not in tags:
            tags[key] = re.sub(r"\s+", "", value)
    return tags


def validate_dkim_structure(signature: str) -> None:
    if not signature:
        raise EvidenceError(EvidenceErrorKind.MALFORMED_DKIM_SIGNATURE, "DKIM signature is empty")

    tags = _dkim_tags(signature)
    for tag in REQUIRED_DKIM_TAGS:
        if not tags.get(tag):
            raise EvidenceError(
                EvidenceErrorKind.MALFORMED_DKIM_SIGNATURE,
                f"DKIM signature format invalid: missing required tag '{tag}='",
                tag=tag,
            )

    if tags["v"] != "1":
        raise EvidenceError(
            EvidenceErrorKind.UNSUPPORTED_DKIM_VERSION,
            "DKIM signature format invalid: unsupported version (must be v=1)",
        )

    if tags["a"].lower() not in SUPPORTED_DKIM_ALGORITHMS:
        raise EvidenceError(
            EvidenceErrorKind.UNSUPPORTED_DKIM_ALGORITHM,
            "DKIM signature format invalid: unsupported algorithm (must be rsa-sha256 or rsa-sha1)",
            algorithm=tags["a"][:32],
        )


def parse_evidence(raw_email: str) -> EvidenceTriple:
    """Parse raw .eml text into an ``EvidenceTriple``.

    Raises ``EvidenceError`` (never a generic error) before any data would
    reach the Proof Engine.
    """
    if not isinstance(raw_email, str) or not raw_email.strip():
        raise EvidenceError(EvidenceErrorKind.NOT_AN_EMAIL, "Email must be a non-empty string")

    headers = split_headers(raw_email)
    if not _HEADER_LINE.search(headers):
        raise EvidenceError(EvidenceErrorKind.NOT_AN_EMAIL, "Input has no email header lines")

    domain = extract_domain(headers)

    signature = find_header(headers, "DKIM-Signature")
    if signature is None:
        raise EvidenceError(EvidenceErrorKind.MISSING_DKIM_SIGNATURE, "DKIM signature not found in email headers")
    validate_dkim_structure(signature)

    auth_results = find_header(headers, "Authentication-Results") or ""

    logger.info("Parsed email evidence for domain %s", domain)
    return EvidenceTriple(domain=domain, dkim_signature=signature, auth_results=auth_results)
