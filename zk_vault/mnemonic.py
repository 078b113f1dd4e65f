"""BIP39-compatible recovery phrases for the root secret.

    12 words = 128-bit secret + 4 checksum bits
    24 words = 256-bit secret + 8 checksum bits

Each word carries 11 bits and is drawn from the standard 2048-word English
list. The checksum is the leading bits of SHA-256(secret), so a mistyped but
valid word is caught instead of silently restoring a different identity.

Phrases are secrets: nothing here logs words or puts them in error messages.
"""

from __future__ import annotations

import hashlib
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Dict, Iterable, List, Tuple

from .errors import MnemonicError


WORDLIST_SIZE = 2048
BITS_PER_WORD = 11

# word count -> secret length in bytes
SECRET_BYTES_BY_WORDS: Dict[int, int] = {12: 16, 24: 32}


@lru_cache(maxsize=1)
def wordlist() -> Tuple[str, ...]:
    path = Path(__file__).with_name("wordlist_english.txt")
    words = tuple(w.strip() for w in path.read_text(encoding="utf-8").splitlines() if w.strip())
    if len(words) != WORDLIST_SIZE:
        raise RuntimeError(f"wordlist must contain {WORDLIST_SIZE} words, found {len(words)}")
    return words


@lru_cache(maxsize=1)
def _word_index() -> Dict[str, int]:
    return {w: i for i, w in enumerate(wordlist())}


def _checksum(secret: bytes) -> Tuple[int, int]:
    bits = len(secret) * 8 // 32
    return hashlib.sha256(secret).digest()[0] >> (8 - bits), bits


def _normalize(phrase: str) -> List[str]:
    if not isinstance(phrase, str):
        raise MnemonicError("not_a_phrase", "Recovery phrase must be a string")
    return phrase.strip().lower().split()


def secret_to_words(secret: bytes, word_count: int = 24) -> str:
    """Encode ``secret`` as a space-separated phrase.

    The secret length must match the word count exactly (16 bytes for 12
    words, 32 for 24); entropy is never truncated.
    """
    if word_count not in SECRET_BYTES_BY_WORDS:
        raise MnemonicError("word_count", "Word count must be 12 or 24", word_count=word_count)
    if not isinstance(secret, (bytes, bytearray)) or len(secret) != SECRET_BYTES_BY_WORDS[word_count]:
        raise MnemonicError(
            "secret_length",
            f"A {word_count}-word phrase encodes exactly {SECRET_BYTES_BY_WORDS[word_count]} bytes",
            word_count=word_count,
        )

    checksum, checksum_bits = _checksum(bytes(secret))
    total_bits = len(secret) * 8 + checksum_bits
    combined = (int.from_bytes(secret, "big") << checksum_bits) | checksum

    words = wordlist()
    out = []
    for i in range(word_count):
        shift = total_bits - BITS_PER_WORD * (i + 1)
        out.append(words[(combined >> shift) & (WORDLIST_SIZE - 1)])
    return " ".join(out)


def words_to_secret(phrase: str) -> bytes:
    """Decode a phrase back to the secret bytes.

    Raises ``MnemonicError`` for a wrong word count, words absent from the
    list (reported by 1-based position only) or a checksum mismatch.
    """
    words = _normalize(phrase)
    if len(words) not in SECRET_BYTES_BY_WORDS:
        raise MnemonicError("word_count", "Recovery phrase must have 12 or 24 words", word_count=len(words))

    index = _word_index()
    unknown = [pos for pos, w in enumerate(words, start=1) if w not in index]
    if unknown:
        raise MnemonicError("unknown_word", "Recovery phrase contains words outside the word list", positions=unknown)

    combined = 0
    for w in words:
        combined = (combined << BITS_PER_WORD) | index[w]

    n_bytes = SECRET_BYTES_BY_WORDS[len(words)]
    checksum_bits = n_bytes * 8 // 32
    secret = (combined >> checksum_bits).to_bytes(n_bytes, "big")
    expected, _ = _checksum(secret)
    if (combined & ((1 << checksum_bits) - 1)) != expected:
        raise MnemonicError("checksum", "Recovery phrase checksum mismatch")
    return secret


def validate_phrase(phrase: str) -> bool:
    try:
        words_to_secret(phrase)
    except MnemonicError:
        return False
    return True


def verification_positions(word_count: int, count: int = 3) -> List[int]:
    """Random distinct 1-based positions to quiz the user after backup."""
    if word_count not in SECRET_BYTES_BY_WORDS:
        raise MnemonicError("word_count", "Word count must be 12 or 24", word_count=word_count)
    count = max(1, min(int(count), word_count))
    return sorted(secrets.SystemRandom().sample(range(1, word_count + 1), count))


def verify_words(phrase: str, checks: Iterable[Tuple[int, str]]) -> bool:
    """Check ``(position, word)`` pairs (1-based) against ``phrase``."""
    words = _normalize(phrase)
    for position, word in checks:
        idx = int(position) - 1
        if idx < 0 or idx >= len(words) or words[idx] != str(word).strip().lower():
            return False
    return True
