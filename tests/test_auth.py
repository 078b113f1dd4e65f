import json

from zk_vault.auth import RelyingPartyAuth, UiTokenAuth, new_ui_token


def test_ui_token_from_env(monkeypatch):
    monkeypatch.delenv("ZKV_UI_TOKEN_FILE", raising=False)
    token = new_ui_token()
    monkeypatch.setenv("ZKV_UI_TOKEN", token)
    auth = UiTokenAuth.load_from_env()
    assert auth.enabled()
    assert auth.check(f"Bearer {token}", None) is None
    assert auth.check(None, token) is None
    assert auth.check(None, None) == "UI_TOKEN_REQUIRED"
    assert auth.check("Bearer nope", None) == "UI_TOKEN_INVALID"
    assert token not in repr(auth)


def test_ui_token_from_file(tmp_path, monkeypatch):
    monkeypatch.delenv("ZKV_UI_TOKEN", raising=False)
    path = tmp_path / "ui.token"
    path.write_text("file-token-0123456789abcdef\n", encoding="utf-8")
    monkeypatch.setenv("ZKV_UI_TOKEN_FILE", str(path))
    assert UiTokenAuth.load_from_env().check("Bearer file-token-0123456789abcdef", None) is None

    monkeypatch.setenv("ZKV_UI_TOKEN_FILE", str(tmp_path / "missing"))
    assert UiTokenAuth.load_from_env().check("Bearer file-token-0123456789abcdef", None) == "UI_TOKEN_CONFIG_INVALID"


def test_missing_or_weak_ui_token_fails_closed(monkeypatch):
    monkeypatch.delenv("ZKV_UI_TOKEN", raising=False)
    monkeypatch.delenv("ZKV_UI_TOKEN_FILE", raising=False)
    assert UiTokenAuth.load_from_env().check("Bearer x", None) == "UI_TOKEN_NOT_CONFIGURED"

    monkeypatch.setenv("ZKV_UI_TOKEN", "short")
    auth = UiTokenAuth.load_from_env()
    assert not auth.enabled()
    assert auth.check("Bearer short", None) == "UI_TOKEN_TOO_SHORT"


def test_relying_party_keys(monkeypatch):
    monkeypatch.delenv("ZKV_RP_KEYS_FILE", raising=False)
    monkeypatch.delenv("ZKV_RP_KEYS_JSON", raising=False)
    open_auth = RelyingPartyAuth.load_from_env()
    assert open_auth.resolve_origin(None, "https://a.example") == ("https://a.example", None)

    monkeypatch.setenv("ZKV_RP_KEYS_JSON", json.dumps({"k1": "https://Shop.Example:443/checkout"}))
    auth = RelyingPartyAuth.load_from_env()
    assert auth.resolve_origin("k1", None) == ("https://shop.example", None)
    assert auth.resolve_origin("k1", "https://shop.example") == ("https://shop.example", None)
    assert auth.resolve_origin("k1", "https://evil.example") == (None, "ORIGIN_MISMATCH")
    assert auth.resolve_origin("k2", None) == (None, "API_KEY_INVALID")
    assert auth.resolve_origin(None, "https://shop.example") == (None, "API_KEY_REQUIRED")


def test_malformed_relying_party_keys_refuse_everyone(monkeypatch):
    monkeypatch.delenv("ZKV_RP_KEYS_FILE", raising=False)
    monkeypatch.setenv("ZKV_RP_KEYS_JSON", "[1, 2]")
    assert RelyingPartyAuth.load_from_env().resolve_origin("k1", "https://a.example") == (None, "RP_KEY_CONFIG_INVALID")

    monkeypatch.setenv("ZKV_RP_KEYS_JSON", json.dumps({"k1": "not a url"}))
    assert RelyingPartyAuth.load_from_env().config_error == "RP_KEY_CONFIG_INVALID"
