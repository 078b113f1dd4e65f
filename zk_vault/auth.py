"""Caller authentication for the broker's HTTP surface.

Two channels share one app and must not be able to act for each other:

* the user's UI (surfaces, approvals, grants, settings, backup) proves itself
  with a shared UI token. With no token configured every UI endpoint is
  refused (fail closed).
* relying parties may be bound to an origin by API key, so the origin a grant
  is recorded under is not client-controlled. Without a key mapping the
  ``Origin`` header is taken as sent, which only a browser enforces.

Env vars:
  - ZKV_UI_TOKEN: the UI credential
  - ZKV_UI_TOKEN_FILE: path to a file holding the UI credential
  - ZKV_RP_KEYS_JSON: JSON object mapping api_key -> origin
  - ZKV_RP_KEYS_FILE: path to a JSON file with the same mapping

The UI presents its token as ``Authorization: Bearer <token>`` or
``X-Api-Key: <token>``; relying parties send ``X-Api-Key``.
"""

from __future__ import annotations

import hmac
import json
import logging
import os
import secrets
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from .permissions import normalize_origin

logger = logging.getLogger("zk_vault.auth")

ENV_UI_TOKEN = "ZKV_UI_TOKEN"
ENV_UI_TOKEN_FILE = "ZKV_UI_TOKEN_FILE"
ENV_RP_KEYS_JSON = "ZKV_RP_KEYS_JSON"
ENV_RP_KEYS_FILE = "ZKV_RP_KEYS_FILE"

MIN_UI_TOKEN_LENGTH = 16


def new_ui_token() -> str:
    return secrets.token_urlsafe(32)


def _bearer(authorization: Optional[str]) -> Optional[str]:
    authz = (authorization or "").strip()
    if authz.lower().startswith("bearer "):
        return authz.split(" ", 1)[1].strip() or None
    return None


@dataclass(frozen=True)
class UiTokenAuth:
    token: Optional[str] = field(default=None, repr=False)
    config_error: Optional[str] = None

    @classmethod
    def load_from_env(cls) -> "UiTokenAuth":
        token = (os.getenv(ENV_UI_TOKEN, "") or "").strip()
        file_path = (os.getenv(ENV_UI_TOKEN_FILE, "") or "").strip()
        if not token and file_path:
            try:
                with open(file_path, "r", encoding="utf-8") as f:
                    token = f.read().strip()
            except OSError:
                logger.warning("UI token file is unreadable; UI endpoints are disabled")
                return cls(config_error="UI_TOKEN_CONFIG_INVALID")
        if not token:
            logger.warning("%s is not set; UI endpoints are disabled", ENV_UI_TOKEN)
            return cls()
        if len(token) < MIN_UI_TOKEN_LENGTH:
            logger.warning("UI token is shorter than %d characters; UI endpoints are disabled", MIN_UI_TOKEN_LENGTH)
            return cls(config_error="UI_TOKEN_TOO_SHORT")
        return cls(token=token)

    def enabled(self) -> bool:
        return bool(self.token) and not self.config_error

    def check(self, authorization: Optional[str], x_api_key: Optional[str]) -> Optional[str]:
        """Returns None when the caller holds the UI token, else an error name."""
        if self.config_error:
            return self.config_error
        if not self.token:
            return "UI_TOKEN_NOT_CONFIGURED"
        presented = _bearer(authorization) or (x_api_key or "").strip()
        if not presented:
            return "UI_TOKEN_REQUIRED"
        if not hmac.compare_digest(presented.encode("utf-8"), self.token.encode("utf-8")):
            return "UI_TOKEN_INVALID"
        return None


@dataclass(frozen=True)
class RelyingPartyAuth:
    key_to_origin: Dict[str, str] = field(default_factory=dict, repr=False)
    configured: bool = False
    config_error: Optional[str] = None

    @classmethod
    def load_from_env(cls) -> "RelyingPartyAuth":
        raw_json = os.getenv(ENV_RP_KEYS_JSON)
        file_path = os.getenv(ENV_RP_KEYS_FILE)
        if not raw_json and not file_path:
            return cls()
        try:
            if raw_json:
                data = json.loads(raw_json)
            else:
                with open(file_path, "r", encoding="utf-8") as f:
                    data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("relying-party key mapping must be a JSON object")
            mapping = {str(k): normalize_origin(str(v)) for k, v in data.items()}
        except (OSError, ValueError):
            # Intended but malformed: refuse every relying party.
            logger.warning("Relying-party key mapping is invalid; disclosures are refused")
            return cls(configured=True, config_error="RP_KEY_CONFIG_INVALID")
        return cls(key_to_origin=mapping, configured=True)

    def enabled(self) -> bool:
        return self.configured

    def resolve_origin(self, api_key: Optional[str], claimed_origin: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
        """Returns (origin, error). A non-None error rejects the request."""
        if self.config_error:
            return None, self.config_error
        if not self.enabled():
            return claimed_origin, None
        if not api_key:
            return None, "API_KEY_REQUIRED"

        origin = None
        for key, bound in self.key_to_origin.items():
            if hmac.compare_digest(key.encode("utf-8"), api_key.encode("utf-8")):
                origin = bound
        if origin is None:
            return None, "API_KEY_INVALID"

        if claimed_origin:
            try:
                claimed = normalize_origin(claimed_origin)
            except ValueError:
                return None, "ORIGIN_MISMATCH"
            if claimed != origin:
                return None, "ORIGIN_MISMATCH"
        return origin, None
