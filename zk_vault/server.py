"""
HTTP surface of the vault broker.

Two audiences share one app:

* relying parties call ``POST /v1/disclosures``; the call long-polls until the
  user decides (or the surface times out), then returns the outcome
* the user's UI polls ``GET /v1/surfaces`` for open generation / consent
  surfaces and answers them through the ``/v1/pending/{id}`` endpoints;
  attestations, grants, settings and the recovery phrase are managed here too

Every UI endpoint requires the UI token (see ``auth``); relying parties never
hold it, so they cannot answer their own requests.

Errors are returned as the stable ``VaultError`` envelope
(``{code, message, retryable, http_status, details?}``).
"""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import __version__
from .auth import RelyingPartyAuth, UiTokenAuth
from .broker import (
    ApproveRequest,
    AttachAttestation,
    BrokerMessage,
    DeleteAttestation,
    DenyRequest,
    GenerateAttestation,
    GetPendingRequest,
    GetPermissions,
    ListAttestations,
    RequestBroker,
    RequestDisclosure,
    SetPermission,
    SurfaceClosed,
)
from .config import BrokerConfig
from .errors import (
    DenialReason,
    DisclosureError,
    VaultError,
    ZKV_E_BAD_REQUEST,
    ZKV_E_LOCKDOWN_ACTIVE,
    ZKV_E_ORIGIN_MISMATCH,
    ZKV_E_UNAUTHORIZED,
    vault_error,
)
from .lockdown import StorageLockdownError
from .metrics import instrument_fastapi

logger = logging.getLogger("zk_vault.server")


# ---------------------------
# Request models
# ---------------------------

class DisclosureRequestBody(BaseModel):
    requestId: str
    claimType: str
    autoRegister: bool = False
    backendUrl: Optional[str] = None


class EvidenceBody(BaseModel):
    evidence: Dict[str, Any] = Field(default_factory=dict)


class ApproveBody(BaseModel):
    grantPermission: bool = False


class PermissionBody(BaseModel):
    origin: str
    claimType: str
    granted: bool = True


class SettingsBody(BaseModel):
    autoApprove: Optional[bool] = None
    expiryDays: Optional[int] = None


class ExportBody(BaseModel):
    words: int = 24


class RestoreBody(BaseModel):
    phrase: str


def create_app(
    broker: Optional[RequestBroker] = None,
    config: Optional[BrokerConfig] = None,
    *,
    ui_auth: Optional[UiTokenAuth] = None,
    rp_auth: Optional[RelyingPartyAuth] = None,
) -> FastAPI:
    """Create the FastAPI application; builds the broker and auth from env when not given."""
    config = config or BrokerConfig.from_env()
    ui_auth = ui_auth if ui_auth is not None else UiTokenAuth.load_from_env()
    rp_auth = rp_auth if rp_auth is not None else RelyingPartyAuth.load_from_env()
    if broker is None:
        broker = RequestBroker.from_config(config)
    wait_seconds = float(config.disclosure_wait_seconds)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        evicted = broker.evict_all()
        if evicted:
            logger.info("Shutdown: cancelled %d pending request(s)", evicted)

    app = FastAPI(
        title="ZK Vault",
        description="Zero-knowledge credential vault and disclosure broker",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.broker = broker

    @app.exception_handler(VaultError)
    async def _vault_error_handler(request: Request, exc: VaultError):
        return JSONResponse(status_code=int(exc.http_status or 400), content=exc.as_dict())

    @app.exception_handler(StorageLockdownError)
    async def _lockdown_handler(request: Request, exc: StorageLockdownError):
        err = vault_error(ZKV_E_LOCKDOWN_ACTIVE, "Vault storage is temporarily locked down",
                          retryable=True, http_status=503)
        return JSONResponse(status_code=503, content=err.as_dict())

    metrics_token = (os.getenv("ZKV_METRICS_TOKEN", "") or "").strip()

    def _authorize_metrics(req: Request) -> bool:
        if not metrics_token:
            return True
        authz = (req.headers.get("Authorization") or "").strip()
        return authz.lower().startswith("bearer ") and authz.split(" ", 1)[1].strip() == metrics_token

    instrument_fastapi(app, authorize=_authorize_metrics)

    async def _require_ui(
        authorization: Optional[str] = Header(None),
        x_api_key: Optional[str] = Header(None, alias="X-Api-Key"),
    ) -> None:
        error = ui_auth.check(authorization, x_api_key)
        if error:
            raise vault_error(ZKV_E_UNAUTHORIZED, "UI credential required", http_status=401, reason=error)

    ui_only = [Depends(_require_ui)]

    async def _send(message: BrokerMessage) -> Any:
        return await broker.dispatch(message)

    # ---------------------------
    # Relying party
    # ---------------------------

    @app.post("/v1/disclosures")
    async def request_disclosure(
        body: DisclosureRequestBody,
        origin: Optional[str] = Header(None),
        x_api_key: Optional[str] = Header(None, alias="X-Api-Key"),
    ):
        # With keys configured the origin comes from the key, not from the caller.
        origin, error = rp_auth.resolve_origin(x_api_key, origin)
        if error == "ORIGIN_MISMATCH":
            raise vault_error(ZKV_E_ORIGIN_MISMATCH, "Origin does not match the API key", http_status=403)
        if error:
            raise vault_error(ZKV_E_UNAUTHORIZED, "Relying-party credential required", http_status=401, reason=error)
        if not origin:
            raise vault_error(ZKV_E_BAD_REQUEST, "Origin header is required", http_status=422)
        future = await _send(RequestDisclosure(
            request_id=body.requestId,
            origin=origin,
            claim_type=body.claimType,
            auto_register=body.autoRegister,
            backend_url=body.backendUrl,
        ))
        try:
            outcome = await asyncio.wait_for(future, timeout=wait_seconds)
        except asyncio.TimeoutError:
            raise DisclosureError(
                DenialReason.USER_CANCELLED,
                "No decision within the wait window",
                request_id=body.requestId,
            ) from None
        finally:
            # A caller that stops waiting releases its pending entry.
            if not future.done():
                future.cancel()
        outcome.raise_for_denial()
        return outcome.as_dict()

    # ---------------------------
    # Interactive surfaces
    # ---------------------------

    @app.get("/v1/surfaces", dependencies=ui_only)
    async def list_surfaces():
        list_open = getattr(broker.surfaces, "list_open", None)
        return {"surfaces": list_open() if list_open is not None else []}

    @app.get("/v1/pending/{request_id}", dependencies=ui_only)
    async def get_pending(request_id: str):
        return await _send(GetPendingRequest(request_id))

    @app.post("/v1/pending/{request_id}/attestation", dependencies=ui_only)
    async def attach_attestation(request_id: str, body: EvidenceBody):
        return await _send(AttachAttestation(request_id, dict(body.evidence)))

    @app.post("/v1/pending/{request_id}/approve", dependencies=ui_only)
    async def approve(request_id: str, body: Optional[ApproveBody] = None):
        grant = bool(body.grantPermission) if body is not None else False
        return await _send(ApproveRequest(request_id, grant_permission=grant))

    @app.post("/v1/pending/{request_id}/deny", dependencies=ui_only)
    async def deny(request_id: str):
        return await _send(DenyRequest(request_id))

    @app.post("/v1/pending/{request_id}/close", dependencies=ui_only)
    async def close_surface(request_id: str):
        return await _send(SurfaceClosed(request_id))

    # ---------------------------
    # Attestations
    # ---------------------------

    @app.get("/v1/attestations", dependencies=ui_only)
    async def list_attestations():
        return {"attestations": await _send(ListAttestations())}

    @app.get("/v1/attestations/{claim_type}", dependencies=ui_only)
    async def get_attestation(claim_type: str):
        attestations = await _send(ListAttestations())
        if claim_type not in attestations:
            raise DisclosureError(DenialReason.PROOF_NOT_FOUND, "No attestation of this claim type")
        return attestations[claim_type]

    @app.post("/v1/attestations/{claim_type}", dependencies=ui_only)
    async def generate_attestation(claim_type: str, body: EvidenceBody):
        return await _send(GenerateAttestation(claim_type, dict(body.evidence)))

    @app.delete("/v1/attestations/{claim_type}", dependencies=ui_only)
    async def delete_attestation(claim_type: str):
        return {"deleted": await _send(DeleteAttestation(claim_type))}

    # ---------------------------
    # Permissions
    # ---------------------------

    @app.get("/v1/permissions", dependencies=ui_only)
    async def get_permissions(origin: Optional[str] = None):
        if origin:
            return {"origin": origin, "claims": await _send(GetPermissions(origin))}
        table = broker.permissions.all_grants()
        return {"permissions": {o: sorted(c.value for c in claims) for o, claims in table.items()}}

    @app.put("/v1/permissions", dependencies=ui_only)
    async def set_permission(body: PermissionBody):
        claims = await _send(SetPermission(body.origin, body.claimType, body.granted))
        return {"origin": body.origin, "claims": claims}

    @app.delete("/v1/permissions", dependencies=ui_only)
    async def revoke_origin(origin: str):
        try:
            removed = broker.permissions.revoke_all(origin)
        except ValueError:
            raise vault_error(ZKV_E_BAD_REQUEST, "Origin must be an absolute URL", http_status=422) from None
        return {"revoked": removed}

    # ---------------------------
    # Settings, identity, backup
    # ---------------------------

    @app.get("/v1/settings", dependencies=ui_only)
    async def get_settings():
        return broker.settings.load().to_record()

    @app.put("/v1/settings", dependencies=ui_only)
    async def update_settings(body: SettingsBody):
        return broker.settings.update(auto_approve=body.autoApprove, expiry_days=body.expiryDays).to_record()

    # Key derivation is CPU-bound; plain ``def`` runs these in the threadpool.
    @app.get("/v1/identity", dependencies=ui_only)
    def identity():
        return {"identityHash": broker.vault.identity_handle()}

    @app.post("/v1/backup/export", dependencies=ui_only)
    def export_phrase(body: Optional[ExportBody] = None):
        words = body.words if body is not None else 24
        phrase = broker.vault.export_phrase(words)
        return {"phrase": phrase, "wordCount": words}

    @app.post("/v1/backup/restore", dependencies=ui_only)
    def restore_phrase(body: RestoreBody):
        return {"identityHash": broker.vault.restore_from_phrase(body.phrase)}

    @app.get("/v1/health")
    async def health_check():
        circuit = getattr(broker.vault.store, "circuit", None)
        return {
            "status": "healthy",
            "version": __version__,
            "pending": len(broker.pending),
            "lockdown_active": bool(circuit and circuit.is_locked()),
        }

    return app


def main():
    """
    Entry point for the ``zk-vault-broker`` command.

    Usage:
        zk-vault-broker                    # 127.0.0.1:8765
        zk-vault-broker --port 9000
    """
    import argparse

    parser = argparse.ArgumentParser(
        description="ZK Vault broker (HTTP)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
    ZKV_DB_PATH                 Path to the SQLite vault (default: zk_vault.db)
    ZKV_PROOF_ENGINE_URL        Prover endpoint (generation is refused when unset)
    ZKV_SURFACE_TIMEOUT_SECONDS Seconds an open surface waits for the user
    ZKV_DISCLOSURE_WAIT_SECONDS Seconds a relying party's request may long-poll
    ZKV_METRICS_ENABLED         Expose /metrics (default: 1)
    ZKV_UI_TOKEN                Credential for the UI endpoints (required)
    ZKV_UI_TOKEN_FILE           File holding the UI credential
    ZKV_RP_KEYS_JSON            JSON {api_key: origin} binding relying parties
    ZKV_METRICS_TOKEN           Bearer token required for /metrics
        """,
    )
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8765, help="Port to bind (default: 8765)")
    parser.add_argument("--log-level", default="info", help="uvicorn log level (default: info)")
    args = parser.parse_args()

    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    print(f"Starting ZK Vault broker on {args.host}:{args.port}")
    app = create_app()
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
