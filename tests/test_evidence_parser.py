import logging

import pytest

from zk_vault.errors import EvidenceError, EvidenceErrorKind
from zk_vault.evidence import find_header, parse_evidence, scrub


def _eml(dkim="v=1; a=rsa-sha256; d=example.com; s=s1; b=c2ln", to="To: a@example.com", extra=""):
    lines = ["From: b@sender.org", to, "Subject: x"]
    if dkim is not None:
        lines.append("DKIM-Signature: " + dkim)
    if extra:
        lines.append(extra)
    return "\r\n".join(lines) + "\r\n\r\nbody\r\n"


def test_parses_folded_signature_and_recipient_domain(sample_eml):
    triple = parse_evidence(sample_eml)
    assert triple.domain == "example.com"
    assert triple.dkim_signature.startswith("v=1; a=rsa-sha256;")
    assert "\n" not in triple.dkim_signature
    assert "b=dGVzdHNpZ25hdHVyZQ==" in triple.dkim_signature
    assert triple.auth_results.startswith("mx.example.com; dkim=pass")


def test_sender_domain_is_the_fallback():
    triple = parse_evidence(_eml(to="Subject-Line: none"))
    assert triple.domain == "sender.org"


def test_display_name_address_form():
    triple = parse_evidence(_eml(to='To: "Alice A." <alice@Mail.Example.co.uk>'))
    assert triple.domain == "mail.example.co.uk"


def test_missing_auth_results_is_empty_not_error():
    assert parse_evidence(_eml()).auth_results == ""


def test_header_lookup_is_case_insensitive():
    headers = "dkim-signature: v=1; a=rsa-sha1; d=x.org; b=abc\r\nX-Other: 1"
    assert find_header(headers, "DKIM-Signature") == "v=1; a=rsa-sha1; d=x.org; b=abc"


@pytest.mark.parametrize(
    "raw,kind",
    [
        ("", EvidenceErrorKind.NOT_AN_EMAIL),
        ("   ", EvidenceErrorKind.NOT_AN_EMAIL),
        (None, EvidenceErrorKind.NOT_AN_EMAIL),
        ("just some text without headers", EvidenceErrorKind.NOT_AN_EMAIL),
        ("Subject: no addresses here\r\n\r\nbody", EvidenceErrorKind.MISSING_DOMAIN),
    ],
)
def test_rejects_non_emails(raw, kind):
    with pytest.raises(EvidenceError) as ei:
        parse_evidence(raw)
    assert ei.value.kind is kind


def test_missing_dkim_signature():
    with pytest.raises(EvidenceError) as ei:
        parse_evidence(_eml(dkim=None))
    assert ei.value.kind is EvidenceErrorKind.MISSING_DKIM_SIGNATURE


@pytest.mark.parametrize("dropped", ["v", "a", "d", "b"])
def test_each_required_tag_is_checked(dropped):
    tags = {"v": "1", "a": "rsa-sha256", "d": "example.com", "b": "c2ln"}
    del tags[dropped]
    dkim = "; ".join(f"{k}={v}" for k, v in tags.items())
    with pytest.raises(EvidenceError) as ei:
        parse_evidence(_eml(dkim=dkim))
    assert ei.value.kind is EvidenceErrorKind.MALFORMED_DKIM_SIGNATURE
    assert ei.value.details["tag"] == dropped


def test_unsupported_version_and_algorithm():
    with pytest.raises(EvidenceError) as ei:
        parse_evidence(_eml(dkim="v=2; a=rsa-sha256; d=example.com; b=c2ln"))
    assert ei.value.kind is EvidenceErrorKind.UNSUPPORTED_DKIM_VERSION

    with pytest.raises(EvidenceError) as ei:
        parse_evidence(_eml(dkim="v=1; a=ed25519-sha256; d=example.com; b=c2ln"))
    assert ei.value.kind is EvidenceErrorKind.UNSUPPORTED_DKIM_ALGORITHM

    # rsa-sha1 is still accepted
    assert parse_evidence(_eml(dkim="v=1; a=rsa-sha1; d=example.com; b=c2ln")).domain == "example.com"


def test_only_the_domain_reaches_the_logs(sample_eml, caplog):
    caplog.set_level(logging.DEBUG, logger="zk_vault")
    parse_evidence(sample_eml)
    assert "example.com" in caplog.text
    assert "alice" not in caplog.text
    assert "dGVzdHNpZ25hdHVyZQ" not in caplog.text
    assert "never be logged" not in caplog.text


def test_scrub_drops_signature_material(sample_eml):
    scrubbed = scrub(parse_evidence(sample_eml))
    assert scrubbed.domain == "example.com"
    assert scrubbed.dkim_signature is None
    assert scrubbed.auth_results is None


def test_receiver_precedence_and_sender_fallback():
    dkim = "DKIM-Signature: v=1; a=rsa-sha256; d=other.com; b=AAAAB3NzaC1yc2E"
    with_to = "To: a@corp.com\r\nFrom: b@other.com\r\n" + dkim + "\r\n\r\nhi"
    without_to = "From: b@other.com\r\n" + dkim + "\r\n\r\nhi"
    assert parse_evidence(with_to).domain == "corp.com"
    assert parse_evidence(without_to).domain == "other.com"


def test_domain_must_end_at_the_tld():
    dkim = "DKIM-Signature: v=1; a=rsa-sha256; d=sender.org; b=c2ln"
    raw = "To: alice@mail.example.co1\r\nFrom: b@sender.org\r\n" + dkim + "\r\n\r\nhi"
    assert parse_evidence(raw).domain == "sender.org"

    with pytest.raises(EvidenceError) as ei:
        parse_evidence("To: alice@mail.example.co1\r\n" + dkim + "\r\n\r\nhi")
    assert ei.value.kind is EvidenceErrorKind.MISSING_DOMAIN
