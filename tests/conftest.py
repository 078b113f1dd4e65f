import time

import pytest

from zk_vault.attestations import AttestationStore, ClaimType, stamp
from zk_vault.broker import RequestBroker, SurfaceQueue
from zk_vault.config import SettingsStore
from zk_vault.crypto import DeviceCipher
from zk_vault.engine import AttestationGenerator, ProofResult
from zk_vault.permissions import PermissionRegistry
from zk_vault.registration import RegistrationClient
from zk_vault.store import VaultStore
from zk_vault.vault import CredentialVault


SAMPLE_EML = (
    "Delivered-To: alice@Example.COM\r\n"
    "From: Bob Sender <bob@sender.org>\r\n"
    "To: Alice <alice@example.com>\r\n"
    "Subject: hello\r\n"
    "DKIM-Signature: v=1; a=rsa-sha256; c=relaxed/relaxed; d=example.com;\r\n"
    "\ts=selector1; h=from:to:subject;\r\n"
    "\tbh=47DEQpj8HBSa+/TImW+5JCeuQeRkm5NMpJWZG3hSuFU=;\r\n"
    "\tb=dGVzdHNpZ25hdHVyZQ==\r\n"
    "Authentication-Results: mx.example.com; dkim=pass header.d=example.com\r\n"
    "\r\n"
    "Body text that must never be logged.\r\n"
)

COMMITMENT = "c0" * 32


class FakeEngine:
    """Stands in for the external prover; records (a copy of) what it was given."""

    def __init__(self, result=None):
        self.result = result
        self.calls = []

    def generate(self, claim_type, private_evidence):
        self.calls.append((claim_type, dict(private_evidence)))
        if self.result is not None:
            return self.result
        if claim_type is ClaimType.EMAIL_DOMAIN:
            claim = {"domain": private_evidence["domain"], "domainHash": "ab" * 32, "commitment": COMMITMENT}
        elif claim_type is ClaimType.COUNTRY:
            claim = {"countryCode": "US", "countryName": "United States", "commitment": COMMITMENT,
                     "latitude": private_evidence.get("latitude")}
        else:
            claim = {"minAge": int(private_evidence["minAge"]), "isOver": True, "commitment": COMMITMENT}
        return ProofResult(success=True, public_claim=claim, proof_bytes="deadbeef")


class RecordingSurfaces(SurfaceQueue):
    def __init__(self):
        super().__init__()
        self.events = []

    def open_generation(self, view):
        self.events.append(("generate", view["requestId"]))
        super().open_generation(view)

    def open_consent(self, view):
        self.events.append(("permission", view["requestId"]))
        super().open_consent(view)

    def close(self, request_id):
        self.events.append(("close", request_id))
        super().close(request_id)


@pytest.fixture
def sample_eml():
    return SAMPLE_EML


@pytest.fixture
def store(tmp_path):
    return VaultStore(db_path=str(tmp_path / "vault.db"))


@pytest.fixture
def cipher():
    return DeviceCipher(fingerprint=lambda: "test-device")


@pytest.fixture
def vault(store, cipher):
    return CredentialVault(store, cipher)


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def surfaces():
    return RecordingSurfaces()


@pytest.fixture
def make_attestation(store):
    """Store an attestation of ``claim_type`` expiring ``expires_in_ms`` from now."""

    def _make(claim_type=ClaimType.EMAIL_DOMAIN, expires_in_ms=24 * 3600 * 1000):
        claims = {
            ClaimType.EMAIL_DOMAIN: {"domain": "example.com", "domainHash": "ab" * 32, "commitment": COMMITMENT},
            ClaimType.COUNTRY: {"countryCode": "DE", "countryName": "Germany", "commitment": COMMITMENT},
            ClaimType.AGE: {"minAge": 18, "isOver": True, "commitment": COMMITMENT},
        }
        now = int(time.time() * 1000)
        attestation = stamp(claim_type, "deadbeef", claims[claim_type], expiry_ms=expires_in_ms,
                            now_ms=now - 1000)
        AttestationStore(store).put(attestation)
        return attestation

    return _make


@pytest.fixture
def make_broker(store, vault, engine, surfaces):
    def _make(**kwargs):
        attestations = AttestationStore(store)
        settings = SettingsStore(store)
        params = dict(
            vault=vault,
            attestations=attestations,
            permissions=PermissionRegistry(store),
            settings=settings,
            generator=AttestationGenerator(engine, attestations, settings),
            registration=RegistrationClient(vault, timeout_seconds=2.0),
            surfaces=surfaces,
        )
        params.update(kwargs)
        return RequestBroker(**params)

    return _make


@pytest.fixture
def broker(make_broker):
    return make_broker()


@pytest.fixture
def fake_engine():
    return FakeEngine
