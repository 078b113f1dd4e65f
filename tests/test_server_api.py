import threading
import time

import pytest
from fastapi.testclient import TestClient

from zk_vault.attestations import ClaimType
from zk_vault.auth import RelyingPartyAuth, UiTokenAuth
from zk_vault.config import BrokerConfig
from zk_vault.server import create_app

ORIGIN = "https://shop.example"
UI_TOKEN = "ui-token-for-tests-0123456789"
UI_HEADERS = {"Authorization": f"Bearer {UI_TOKEN}"}


def _app(broker, ui_auth=None, rp_auth=None):
    return create_app(
        broker=broker,
        config=BrokerConfig(disclosure_wait_seconds=5),
        ui_auth=ui_auth if ui_auth is not None else UiTokenAuth(token=UI_TOKEN),
        rp_auth=rp_auth if rp_auth is not None else RelyingPartyAuth(),
    )


@pytest.fixture
def app(broker):
    return _app(broker)


@pytest.fixture
def client(app):
    with TestClient(app, headers=UI_HEADERS) as c:
        yield c


@pytest.fixture
def anon(app):
    # Same app, no UI credential (what a relying party holds).
    return TestClient(app)


def _disclose_in_thread(client, body, origin=ORIGIN):
    box = {}

    def _run():
        box["resp"] = client.post("/v1/disclosures", json=body, headers={"Origin": origin})

    t = threading.Thread(target=_run, daemon=True)
    t.start()
    return t, box


def _wait_for_surface(client, request_id):
    for _ in range(300):
        for surface in client.get("/v1/surfaces").json()["surfaces"]:
            if surface["requestId"] == request_id:
                return surface
        time.sleep(0.01)
    raise AssertionError(f"surface for {request_id} never opened")


def test_health(client):
    r = client.get("/v1/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "healthy"
    assert body["pending"] == 0
    assert body["lockdown_active"] is False


def test_disclosure_requires_origin(client):
    r = client.post("/v1/disclosures", json={"requestId": "r1", "claimType": "age"})
    assert r.status_code == 422
    assert r.json()["code"] == "ZKV_E_BAD_REQUEST"


def test_pre_granted_disclosure_returns_immediately(client, broker, make_attestation):
    attestation = make_attestation(ClaimType.AGE)
    broker.permissions.grant(ORIGIN, ClaimType.AGE)

    r = client.post("/v1/disclosures", json={"requestId": "r1", "claimType": "age"}, headers={"Origin": ORIGIN})
    assert r.status_code == 200
    body = r.json()
    assert body["state"] == "Delivered"
    assert body["attestation"] == attestation.public_view()
    assert body["registration"] is None


def test_consent_flow_over_http(client, make_attestation):
    make_attestation(ClaimType.COUNTRY)
    t, box = _disclose_in_thread(client, {"requestId": "r2", "claimType": "country"})

    surface = _wait_for_surface(client, "r2")
    assert surface["mode"] == "permission"
    assert surface["origin"] == ORIGIN
    assert surface["description"] == "Your country: DE"

    pending = client.get("/v1/pending/r2").json()
    assert pending["proofType"] == "country"

    r = client.post("/v1/pending/r2/approve", json={"grantPermission": True})
    assert r.status_code == 200
    t.join(timeout=5)

    assert box["resp"].status_code == 200
    assert box["resp"].json()["attestation"]["publicInputs"]["countryCode"] == "DE"
    assert client.get("/v1/permissions", params={"origin": ORIGIN}).json()["claims"] == ["country"]
    assert client.get("/v1/surfaces").json()["surfaces"] == []


def test_generation_flow_over_http(client, sample_eml):
    t, box = _disclose_in_thread(client, {"requestId": "r3", "claimType": "email_domain"})
    assert _wait_for_surface(client, "r3")["mode"] == "generate"

    r = client.post("/v1/pending/r3/attestation", json={"evidence": {"emlContent": sample_eml}})
    assert r.status_code == 200
    assert r.json()["mode"] == "permission"

    client.post("/v1/pending/r3/approve")
    t.join(timeout=5)
    assert box["resp"].json()["attestation"]["publicInputs"]["domain"] == "example.com"


def test_denied_disclosure_is_a_named_error(client, make_attestation):
    make_attestation(ClaimType.AGE)
    t, box = _disclose_in_thread(client, {"requestId": "r4", "claimType": "age"})
    _wait_for_surface(client, "r4")

    client.post("/v1/pending/r4/deny")
    t.join(timeout=5)
    assert box["resp"].status_code == 403
    assert box["resp"].json()["code"] == "ZKV_E_PERMISSION_DENIED"


def test_closed_surface_is_user_cancelled(client):
    t, box = _disclose_in_thread(client, {"requestId": "r5", "claimType": "age"})
    _wait_for_surface(client, "r5")

    client.post("/v1/pending/r5/close")
    t.join(timeout=5)
    assert box["resp"].status_code == 409
    assert box["resp"].json()["code"] == "ZKV_E_USER_CANCELLED"


def test_unknown_pending_request(client):
    for path in ("/v1/pending/missing/approve", "/v1/pending/missing/deny", "/v1/pending/missing/close"):
        r = client.post(path)
        assert r.status_code == 404
        assert r.json()["code"] == "ZKV_E_REQUEST_NOT_FOUND"
    assert client.get("/v1/pending/missing").status_code == 404


def test_evidence_errors_surface_their_code(client):
    r = client.post("/v1/attestations/email_domain", json={"evidence": {"emlContent": "nope"}})
    assert r.status_code == 422
    assert r.json()["code"] == "ZKV_E_NOT_AN_EMAIL"


def test_attestation_management(client):
    r = client.post("/v1/attestations/age", json={"evidence": {"birthDate": "2000-02-02", "minAge": 18}})
    assert r.status_code == 200
    assert r.json()["type"] == "age"

    assert set(client.get("/v1/attestations").json()["attestations"]) == {"age"}
    assert client.get("/v1/attestations/age").json()["expired"] is False
    assert client.delete("/v1/attestations/age").json() == {"deleted": True}
    assert client.get("/v1/attestations/age").status_code == 404


def test_permission_management(client):
    r = client.put("/v1/permissions", json={"origin": ORIGIN, "claimType": "age", "granted": True})
    assert r.json()["claims"] == ["age"]
    client.put("/v1/permissions", json={"origin": "https://other.example", "claimType": "country"})

    table = client.get("/v1/permissions").json()["permissions"]
    assert table == {ORIGIN: ["age"], "https://other.example": ["country"]}

    assert client.delete("/v1/permissions", params={"origin": ORIGIN}).json() == {"revoked": 1}
    assert client.get("/v1/permissions", params={"origin": ORIGIN}).json()["claims"] == []


def test_settings(client):
    assert client.get("/v1/settings").json() == {"autoApprove": False, "expiryDays": 30}
    r = client.put("/v1/settings", json={"expiryDays": 9999})
    assert r.json() == {"autoApprove": False, "expiryDays": 365}
    r = client.put("/v1/settings", json={"autoApprove": True})
    assert r.json() == {"autoApprove": True, "expiryDays": 365}


def test_identity_and_backup(client):
    handle = client.get("/v1/identity").json()["identityHash"]
    assert len(handle) == 64

    phrase = client.post("/v1/backup/export", json={"words": 24}).json()["phrase"]
    assert len(phrase.split()) == 24

    r = client.post("/v1/backup/export", json={"words": 12})
    assert r.status_code == 422
    assert r.json()["code"] == "ZKV_E_MNEMONIC_INVALID"

    assert client.post("/v1/backup/restore", json={"phrase": phrase}).json() == {"identityHash": handle}
    bad = client.post("/v1/backup/restore", json={"phrase": "abandon " * 24})
    assert bad.status_code == 422


def test_metrics_endpoint(client):
    client.get("/v1/health")
    r = client.get("/metrics")
    assert r.status_code == 200
    assert "zkv_http_requests_total" in r.text


def test_metrics_endpoint_honours_its_token(broker, monkeypatch):
    monkeypatch.setenv("ZKV_METRICS_TOKEN", "metrics-secret")
    with TestClient(_app(broker)) as c:
        assert c.get("/metrics").status_code == 403
        r = c.get("/metrics", headers={"Authorization": "Bearer metrics-secret"})
        assert r.status_code == 200
        assert "zkv_pending_requests" in r.text


def test_relying_party_cannot_answer_its_own_request(client, anon, broker, make_attestation):
    make_attestation(ClaimType.COUNTRY)
    evil = "https://evil.example"
    t, box = _disclose_in_thread(client, {"requestId": "mine", "claimType": "country"}, origin=evil)
    _wait_for_surface(client, "mine")

    attempts = [
        anon.post("/v1/pending/mine/approve", json={"grantPermission": True}),
        anon.get("/v1/pending/mine"),
        anon.get("/v1/surfaces"),
        anon.put("/v1/permissions", json={"origin": evil, "claimType": "age", "granted": True}),
        anon.post("/v1/backup/export", json={"words": 24}),
        anon.get("/v1/identity"),
        anon.post("/v1/pending/mine/approve", headers={"Authorization": "Bearer not-the-token"}),
        anon.post("/v1/pending/mine/approve", headers={"X-Api-Key": "not-the-token"}),
    ]
    for r in attempts:
        assert r.status_code == 401
        assert r.json()["code"] == "ZKV_E_UNAUTHORIZED"

    assert "mine" in broker.pending
    assert broker.permissions.list_grants(evil) == set()

    client.post("/v1/pending/mine/deny")
    t.join(timeout=5)
    assert box["resp"].status_code == 403


def test_ui_token_is_accepted_as_api_key(app):
    with TestClient(app, headers={"X-Api-Key": UI_TOKEN}) as c:
        assert c.get("/v1/settings").status_code == 200


def test_ui_endpoints_fail_closed_without_a_configured_token(broker):
    with TestClient(_app(broker, ui_auth=UiTokenAuth())) as c:
        r = c.get("/v1/settings", headers={"Authorization": "Bearer anything-at-all"})
        assert r.status_code == 401
        assert r.json()["details"]["reason"] == "UI_TOKEN_NOT_CONFIGURED"
        assert c.post("/v1/backup/export").status_code == 401
        assert c.get("/v1/health").status_code == 200


def test_relying_party_key_binds_the_origin(broker, make_attestation):
    attestation = make_attestation(ClaimType.AGE)
    broker.permissions.grant(ORIGIN, ClaimType.AGE)
    rp_auth = RelyingPartyAuth(key_to_origin={"rp-key": ORIGIN}, configured=True)

    with TestClient(_app(broker, rp_auth=rp_auth)) as c:
        body = {"requestId": "k1", "claimType": "age"}
        r = c.post("/v1/disclosures", json=body, headers={"Origin": ORIGIN})
        assert r.status_code == 401

        r = c.post("/v1/disclosures", json=body, headers={"Origin": "https://evil.example", "X-Api-Key": "rp-key"})
        assert r.status_code == 403
        assert r.json()["code"] == "ZKV_E_ORIGIN_MISMATCH"

        r = c.post("/v1/disclosures", json=body, headers={"X-Api-Key": "rp-key"})
        assert r.status_code == 200
        assert r.json()["attestation"] == attestation.public_view()
