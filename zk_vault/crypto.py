"""
ZK Vault at-rest encryption.

AES-GCM-256 with a key derived (PBKDF2-HMAC-SHA256, fixed application salt)
from a best-effort *device fingerprint*.

KNOWN LIMITATION: the fingerprint is not a secret. Anyone who can run code
as the same user on the same machine can rebuild the key. This layer only
raises the cost of casually inspecting a copied database file; it is NOT a
"secure at rest" guarantee. A user-supplied passphrase would be required for
that and is not implemented.

Wire shape of an encrypted value (kept compatible with the browser vault):
    {"encrypted": [int, ...], "iv": [int x 12], "version": 1}
"""

from __future__ import annotations

import hashlib
import locale
import os
import platform
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .config import MIN_PBKDF2_ITERATIONS


ENCRYPTION_SALT = b"zk-vault-encryption-salt-v1"
SCHEMA_VERSION = 1
IV_LENGTH = 12
KEY_LENGTH = 32


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _timezone_offset_minutes() -> int:
    # Standard-time offset, UTC - local, in minutes. DST is ignored so the
    # key survives the seasonal clock change.
    return int(time.timezone // 60)


def _locale_name() -> str:
    try:
        name = locale.getlocale()[0]
    except ValueError:
        name = None
    return name or os.getenv("LANG", "") or "unknown"


def device_fingerprint() -> str:
    """Collect environment characteristics into a stable string.

    Only values that survive restarts and upgrades are used: OS family and
    architecture, locale, standard timezone offset, core count, host name.
    Screen dimensions have no stable equivalent for a background service.
    """
    components = [
        f"{platform.system()} {platform.machine()}",
        _locale_name(),
        str(_timezone_offset_minutes()),
        str(os.cpu_count() or "unknown"),
        platform.node() or "unknown",
    ]
    return "|".join(components)


def derive_device_key(
    fingerprint: Optional[str] = None,
    *,
    iterations: int = MIN_PBKDF2_ITERATIONS,
) -> bytes:
    """SHA-256(fingerprint) -> PBKDF2-HMAC-SHA256 -> 32-byte AES key."""
    if iterations < MIN_PBKDF2_ITERATIONS:
        raise ValueError(f"PBKDF2 iterations must be >= {MIN_PBKDF2_ITERATIONS}")
    material = hashlib.sha256((fingerprint if fingerprint is not None else device_fingerprint()).encode("utf-8")).digest()
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=ENCRYPTION_SALT,
        iterations=iterations,
    )
    return kdf.derive(material)


@dataclass(frozen=True)
class EncryptedSecret:
    ciphertext: bytes
    iv: bytes
    schema_version: int = SCHEMA_VERSION

    def to_record(self) -> Dict[str, Any]:
        return {
            "encrypted": list(self.ciphertext),
            "iv": list(self.iv),
            "version": int(self.schema_version),
        }

    @classmethod
    def from_record(cls, record: Any) -> "EncryptedSecret":
        if not is_encrypted(record):
            raise ValueError("Invalid encrypted data format")
        try:
            ciphertext = bytes(record["encrypted"])
            iv = bytes(record["iv"])
        except (TypeError, ValueError) as e:
            raise ValueError("Invalid encrypted data format") from e
        return cls(ciphertext=ciphertext, iv=iv, schema_version=int(record.get("version", SCHEMA_VERSION)))


def is_encrypted(value: Any) -> bool:
    """True only for the wrapped-ciphertext shape; bare legacy strings are False."""
    if not isinstance(value, dict):
        return False
    encrypted = value.get("encrypted")
    iv = value.get("iv")
    return (
        isinstance(encrypted, list)
        and isinstance(iv, list)
        and len(encrypted) > 0
        and len(iv) == IV_LENGTH
    )


class DeviceCipher:
    """Encrypts short values under the device-bound key.

    The key is derived lazily once per instance; PBKDF2 at 100k+ iterations
    is deliberately slow.
    """

    def __init__(
        self,
        *,
        iterations: int = MIN_PBKDF2_ITERATIONS,
        fingerprint: Optional[Callable[[], str]] = None,
    ):
        self.iterations = int(iterations)
        self._fingerprint = fingerprint or device_fingerprint
        self._key: Optional[bytes] = None

    def _aead(self) -> AESGCM:
        if self._key is None:
            self._key = derive_device_key(self._fingerprint(), iterations=self.iterations)
        return AESGCM(self._key)

    def encrypt(self, plaintext: str) -> EncryptedSecret:
        iv = os.urandom(IV_LENGTH)
        ciphertext = self._aead().encrypt(iv, plaintext.encode("utf-8"), None)
        return EncryptedSecret(ciphertext=ciphertext, iv=iv)

    def decrypt(self, secret: EncryptedSecret) -> str:
        """Raises ``ValueError`` if the value was not produced under this key."""
        try:
            data = self._aead().decrypt(secret.iv, secret.ciphertext, None)
        except InvalidTag as e:
            raise ValueError("Decryption failed") from e
        return data.decode("utf-8")

