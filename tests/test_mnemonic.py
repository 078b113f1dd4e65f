import pytest

from zk_vault.errors import MnemonicError
from zk_vault.mnemonic import (
    secret_to_words,
    validate_phrase,
    verification_positions,
    verify_words,
    words_to_secret,
)


# Reference vectors from the BIP39 English test set.
VECTORS = [
    (b"\x00" * 16, " ".join(["abandon"] * 11 + ["about"])),
    (b"\x7f" * 16, "legal winner thank year wave sausage worth useful legal winner thank yellow"),
    (b"\xff" * 16, " ".join(["zoo"] * 11 + ["wrong"])),
    (b"\x00" * 32, " ".join(["abandon"] * 23 + ["art"])),
    (b"\xff" * 32, " ".join(["zoo"] * 23 + ["vote"])),
]


@pytest.mark.parametrize("secret,phrase", VECTORS)
def test_reference_vectors(secret, phrase):
    assert secret_to_words(secret, len(phrase.split())) == phrase
    assert words_to_secret(phrase) == secret


def test_random_root_secret_restores_exactly():
    import secrets

    secret = secrets.token_bytes(32)
    phrase = secret_to_words(secret, 24)
    assert len(phrase.split()) == 24
    assert words_to_secret(phrase) == secret


def test_twelve_words_cannot_carry_a_root_secret():
    # 12 words hold 128 bits; truncating a 256-bit secret would lose the identity.
    with pytest.raises(MnemonicError) as ei:
        secret_to_words(b"\x01" * 32, 12)
    assert ei.value.reason == "secret_length"


def test_unsupported_word_count_rejected():
    with pytest.raises(MnemonicError) as ei:
        secret_to_words(b"\x00" * 16, 15)
    assert ei.value.reason == "word_count"

    with pytest.raises(MnemonicError) as ei:
        words_to_secret("abandon " * 5)
    assert ei.value.reason == "word_count"


def test_unknown_word_reported_by_position_only():
    words = ["abandon"] * 11 + ["notaword"]
    with pytest.raises(MnemonicError) as ei:
        words_to_secret(" ".join(words))
    assert ei.value.reason == "unknown_word"
    assert ei.value.details["positions"] == [12]
    assert "notaword" not in str(ei.value)
    assert "notaword" not in repr(ei.value.as_dict())


def test_checksum_mismatch_detected():
    # Valid words, wrong final checksum word.
    with pytest.raises(MnemonicError) as ei:
        words_to_secret(" ".join(["abandon"] * 12))
    assert ei.value.reason == "checksum"


def test_phrase_normalization():
    phrase = "  " + " ".join(["Abandon"] * 11 + ["ABOUT"]) + "\n"
    assert words_to_secret(phrase) == b"\x00" * 16
    assert validate_phrase(phrase)
    assert not validate_phrase("hello world")
    assert not validate_phrase(None)


def test_verification_quiz():
    phrase = " ".join(["abandon"] * 23 + ["art"])
    positions = verification_positions(24)
    assert len(positions) == 3
    assert len(set(positions)) == 3
    assert all(1 <= p <= 24 for p in positions)

    assert verify_words(phrase, [(1, "abandon"), (24, "ART")])
    assert not verify_words(phrase, [(24, "abandon")])
    assert not verify_words(phrase, [(25, "abandon")])
