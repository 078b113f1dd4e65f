import importlib


def _read_pyproject_version() -> str:
    import re
    from pathlib import Path

    txt = (Path(__file__).resolve().parents[1] / "pyproject.toml").read_text(encoding="utf-8")
    m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
    assert m, "Could not locate [project].version in pyproject.toml"
    return m.group(1)


def test_convenience_imports_work():
    import zk_vault

    assert hasattr(zk_vault, "RequestBroker")
    assert hasattr(zk_vault, "create_app")

    from zk_vault import CredentialVault, RequestBroker, create_app, parse_evidence  # noqa: F401

    assert "parse_evidence" in dir(zk_vault)
    importlib.reload(zk_vault)


def test_unknown_attribute_raises():
    import pytest
    import zk_vault

    with pytest.raises(AttributeError):
        zk_vault.not_a_thing  # noqa: B018


def test_version_export_matches_pyproject():
    import zk_vault

    assert zk_vault.__version__ == _read_pyproject_version()
