"""
Credential Vault: custody of the user's 32-byte root secret.

The root secret is the only long-lived secret in the system. From it we
derive the *identity handle*, a stable pseudonym shared by every claim type
and every relying party.

Invariants:
- the plaintext secret is only ever held in memory; storage sees the
  encrypted envelope (see ``crypto`` for the strength of that envelope)
- a legacy plaintext record is re-written encrypted before it is returned
- concurrent first-time callers converge on a single persisted secret
- an undecryptable or corrupt record is logged and treated as absent
"""

from __future__ import annotations

import json
import logging
import secrets
import threading
import time
from typing import Optional

from .config import MIN_PBKDF2_ITERATIONS
from .crypto import DeviceCipher, EncryptedSecret, is_encrypted, sha256_hex
from .errors import MnemonicError
from .mnemonic import secret_to_words, words_to_secret
from .store import VaultStore

logger = logging.getLogger("zk_vault.vault")

ROOT_SECRET_NAME = "root_secret"
ROOT_SECRET_BYTES = 32


def _now_ms() -> int:
    return int(time.time() * 1000)


def derive_identity_handle(secret: bytes) -> str:
    """SHA-256 over the secret's lowercase hex form -> 64 hex chars.

    Hashing the hex text (not the raw bytes) keeps handles identical to the
    ones issued by earlier vault versions.
    """
    if not isinstance(secret, (bytes, bytearray)) or len(secret) != ROOT_SECRET_BYTES:
        raise ValueError("root secret must be 32 bytes")
    return sha256_hex(bytes(secret).hex().encode("ascii"))


def _legacy_secret(value: str) -> Optional[bytes]:
    try:
        raw = bytes.fromhex(value.strip())
    except ValueError:
        return None
    return raw if len(raw) == ROOT_SECRET_BYTES else None


class CredentialVault:
    def __init__(
        self,
        store: VaultStore,
        cipher: Optional[DeviceCipher] = None,
        *,
        iterations: int = MIN_PBKDF2_ITERATIONS,
    ):
        self.store = store
        self.cipher = cipher or DeviceCipher(iterations=iterations)
        self._lock = threading.Lock()

    def _encrypt_record(self, secret: bytes) -> str:
        return json.dumps(self.cipher.encrypt(secret.hex()).to_record(), separators=(",", ":"))

    def get_root_secret(self) -> Optional[bytes]:
        """Return the decrypted root secret, or None if absent/unusable."""
        raw = self.store.get_secret(ROOT_SECRET_NAME)
        if raw is None:
            return None
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Stored root secret is not valid JSON; treating as absent")
            return None

        if is_encrypted(value):
            try:
                secret = bytes.fromhex(self.cipher.decrypt(EncryptedSecret.from_record(value)))
            except ValueError:
                logger.warning("Failed to decrypt root secret; treating as absent")
                return None
            if len(secret) != ROOT_SECRET_BYTES:
                logger.warning("Decrypted root secret has unexpected length; treating as absent")
                return None
            return secret

        if isinstance(value, str):
            secret = _legacy_secret(value)
            if secret is None:
                logger.warning("Legacy root secret record is malformed; treating as absent")
                return None
            # Migration-on-read: encrypted copy must be durable before anyone sees the secret.
            if self.store.swap_secret(ROOT_SECRET_NAME, raw, self._encrypt_record(secret), _now_ms()):
                logger.info("Migrated plaintext root secret to encrypted storage")
                return secret
            # Lost the race to another migrator; their write is authoritative.
            return self.get_root_secret()

        logger.warning("Stored root secret has unknown shape; treating as absent")
        return None

    def get_or_create_root_secret(self) -> bytes:
        with self._lock:
            existing = self.get_root_secret()
            if existing is not None:
                return existing

            candidate = secrets.token_bytes(ROOT_SECRET_BYTES)
            record = self._encrypt_record(candidate)
            if self.store.insert_secret_if_absent(ROOT_SECRET_NAME, record, _now_ms()):
                logger.info("Generated new root secret (stored encrypted)")
                return candidate

            winner = self.get_root_secret()
            if winner is not None:
                return winner

            # A record exists but cannot be read under this device key.
            logger.warning("Replacing unreadable root secret record; previous identity is lost")
            self.store.replace_secret(ROOT_SECRET_NAME, record, _now_ms())
            return candidate

    def identity_handle(self) -> str:
        return derive_identity_handle(self.get_or_create_root_secret())

    def export_phrase(self, word_count: int = 24) -> str:
        """Recovery phrase for the current root secret.

        The root secret is 256 bits, so only the 24-word form can carry it;
        asking for 12 words raises ``MnemonicError``.
        """
        return secret_to_words(self.get_or_create_root_secret(), word_count)

    def restore_from_phrase(self, phrase: str) -> str:
        """Replace the root secret from a recovery phrase; returns the new identity handle."""
        secret = words_to_secret(phrase)
        if len(secret) != ROOT_SECRET_BYTES:
            raise MnemonicError("secret_length", "A root secret backup must be a 24-word phrase")
        with self._lock:
            self.store.replace_secret(ROOT_SECRET_NAME, self._encrypt_record(secret), _now_ms())
        logger.info("Root secret restored from recovery phrase")
        return derive_identity_handle(secret)
