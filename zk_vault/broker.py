"""
Request Broker: the wallet-like state machine behind every disclosure.

Per request id:

    Received -> NoAttestation | Expired | AwaitingPermission | Approved
             -> Delivered | Denied

Classification order for an incoming request:
    1. no attestation of the claim type         -> NoAttestation (generation surface)
    2. attestation expired                      -> Expired (same as 1)
    3. origin has no grant for the claim type   -> AwaitingPermission (consent surface)
    4. otherwise                                -> Approved, no surface at all

A generated attestation attached to a pending request re-enters step 3; with
``autoApprove`` set the grant is recorded and the request approved directly.

Policy outcomes (denied, cancelled) resolve the caller's future with a
``DisclosureOutcome``; they are not raised. Operations addressed to an
unknown request id always raise ``DisclosureError(RequestNotFound)``; after a
restart this is the expected answer for ids issued by the previous process.

All state here is volatile. Durable state lives in the vault store.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Union, get_args

from . import metrics
from .attestations import Attestation, AttestationStore, ClaimType, PUBLIC_FIELDS
from .config import BrokerConfig, SettingsStore
from .engine import AttestationGenerator, HttpProofEngine, ProofEngine
from .errors import (
    DenialReason,
    DisclosureError,
    RegistrationError,
    ZKV_E_DUPLICATE_REQUEST,
    ZKV_E_BAD_REQUEST,
    vault_error,
)
from .permissions import PermissionRegistry, normalize_origin
from .registration import RegistrationClient, RegistrationSkipped
from .store import VaultStore
from .vault import CredentialVault

logger = logging.getLogger("zk_vault.broker")


def _now_ms() -> int:
    return int(time.time() * 1000)


class DisclosureState(str, Enum):
    RECEIVED = "Received"
    NO_ATTESTATION = "NoAttestation"
    EXPIRED = "Expired"
    AWAITING_PERMISSION = "AwaitingPermission"
    APPROVED = "Approved"
    DELIVERED = "Delivered"
    DENIED = "Denied"


class SurfaceKind(str, Enum):
    GENERATION = "generate"
    CONSENT = "permission"


@dataclass
class DisclosureOutcome:
    request_id: str
    origin: str
    claim_type: ClaimType
    state: DisclosureState
    attestation: Optional[Dict[str, Any]] = None
    registration: Optional[Dict[str, Any]] = None
    registration_skipped: bool = False
    registration_error: Optional[str] = None
    reason: Optional[DenialReason] = None

    @property
    def delivered(self) -> bool:
        return self.state is DisclosureState.DELIVERED

    def raise_for_denial(self) -> None:
        if not self.delivered:
            reason = self.reason or DenialReason.PERMISSION_DENIED
            raise DisclosureError(reason, _DENIAL_MESSAGES[reason], request_id=self.request_id)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "requestId": self.request_id,
            "state": self.state.value,
            "attestation": self.attestation,
            "registration": self.registration,
        }
        if self.registration_skipped:
            d["registrationSkipped"] = True
        if self.registration_error:
            d["registrationError"] = self.registration_error
        if self.reason is not None:
            d["reason"] = self.reason.value
        return d


_DENIAL_MESSAGES = {
    DenialReason.PROOF_NOT_FOUND: "No attestation available for this claim type",
    DenialReason.PERMISSION_DENIED: "Permission denied by user",
    DenialReason.USER_CANCELLED: "Request cancelled before a decision was made",
    DenialReason.REQUEST_NOT_FOUND: "Request not found",
}


@dataclass
class PendingRequest:
    """In-memory record of a disclosure awaiting the user. Holds no private evidence."""

    request_id: str
    origin: str
    claim_type: ClaimType
    auto_register: bool
    backend_url: Optional[str]
    responder: "asyncio.Future[DisclosureOutcome]"
    state: DisclosureState
    attestation: Optional[Attestation] = None
    created_at: int = field(default_factory=_now_ms)
    generating: bool = False
    timer: Optional[asyncio.TimerHandle] = None

    @property
    def surface(self) -> SurfaceKind:
        if self.state is DisclosureState.AWAITING_PERMISSION:
            return SurfaceKind.CONSENT
        return SurfaceKind.GENERATION

    def view(self) -> Dict[str, Any]:
        """What an interactive surface may show: public data only."""
        d: Dict[str, Any] = {
            "requestId": self.request_id,
            "origin": self.origin,
            "proofType": self.claim_type.value,
            "mode": self.surface.value,
            "state": self.state.value,
            "autoRegister": self.auto_register,
            "createdAt": self.created_at,
            "disclosedFields": list(PUBLIC_FIELDS[self.claim_type]),
        }
        if self.attestation is not None:
            d["proof"] = self.attestation.public_view()
            d["description"] = self.attestation.describe()
            d["hiddenFields"] = self.attestation.hidden_fields()
        return d


class PendingRegistry:
    """Owned map of request id -> PendingRequest with per-entry deadlines."""

    def __init__(self) -> None:
        self._entries: Dict[str, PendingRequest] = {}

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, request_id: str) -> Optional[PendingRequest]:
        return self._entries.get(request_id)

    def ids(self) -> List[str]:
        return list(self._entries)

    def add(self, pending: PendingRequest, timeout_seconds: float, on_expire: Callable[[str], None]) -> None:
        if pending.request_id in self._entries:
            raise vault_error(ZKV_E_DUPLICATE_REQUEST, "Request id already pending", http_status=409)
        loop = asyncio.get_running_loop()
        pending.timer = loop.call_later(timeout_seconds, on_expire, pending.request_id)
        self._entries[pending.request_id] = pending
        metrics.set_pending(len(self._entries))

    def pop(self, request_id: str) -> Optional[PendingRequest]:
        pending = self._entries.pop(request_id, None)
        if pending is not None:
            if pending.timer is not None:
                pending.timer.cancel()
                pending.timer = None
            metrics.set_pending(len(self._entries))
        return pending


class InteractiveSurfaces(Protocol):
    """Out-of-process UI (generation / consent). Calls must not block."""

    def open_generation(self, view: Dict[str, Any]) -> None:
        ...

    def open_consent(self, view: Dict[str, Any]) -> None:
        ...

    def close(self, request_id: str) -> None:
        ...


class SurfaceQueue:
    """Surfaces a UI polls for (``GET /v1/surfaces``)."""

    def __init__(self) -> None:
        self._open: Dict[str, Dict[str, Any]] = {}

    def open_generation(self, view: Dict[str, Any]) -> None:
        self._open[view["requestId"]] = view

    def open_consent(self, view: Dict[str, Any]) -> None:
        self._open[view["requestId"]] = view

    def close(self, request_id: str) -> None:
        self._open.pop(request_id, None)

    def list_open(self) -> List[Dict[str, Any]]:
        return list(self._open.values())


# ---------------------------
# Messages
# ---------------------------

@dataclass(frozen=True)
class RequestDisclosure:
    request_id: str
    origin: str
    claim_type: str
    auto_register: bool = False
    backend_url: Optional[str] = None


@dataclass(frozen=True)
class GetPendingRequest:
    request_id: str


@dataclass(frozen=True)
class AttachAttestation:
    """Generate from private evidence inside the surface and attach to the request."""

    request_id: str
    private_evidence: Dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class ApproveRequest:
    request_id: str
    grant_permission: bool = False


@dataclass(frozen=True)
class DenyRequest:
    request_id: str


@dataclass(frozen=True)
class SurfaceClosed:
    request_id: str


@dataclass(frozen=True)
class GenerateAttestation:
    claim_type: str
    private_evidence: Dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class ListAttestations:
    pass


@dataclass(frozen=True)
class DeleteAttestation:
    claim_type: str


@dataclass(frozen=True)
class GetPermissions:
    origin: str


@dataclass(frozen=True)
class SetPermission:
    origin: str
    claim_type: str
    granted: bool


BrokerMessage = Union[
    RequestDisclosure,
    GetPendingRequest,
    AttachAttestation,
    ApproveRequest,
    DenyRequest,
    SurfaceClosed,
    GenerateAttestation,
    ListAttestations,
    DeleteAttestation,
    GetPermissions,
    SetPermission,
]

_HANDLERS: Dict[type, str] = {
    RequestDisclosure: "_on_request_disclosure",
    GetPendingRequest: "_on_get_pending",
    AttachAttestation: "_on_attach_attestation",
    ApproveRequest: "_on_approve",
    DenyRequest: "_on_deny",
    SurfaceClosed: "_on_surface_closed",
    GenerateAttestation: "_on_generate",
    ListAttestations: "_on_list_attestations",
    DeleteAttestation: "_on_delete_attestation",
    GetPermissions: "_on_get_permissions",
    SetPermission: "_on_set_permission",
}

if set(_HANDLERS) != set(get_args(BrokerMessage)):
    raise RuntimeError("broker handler table does not cover every message variant")


def _parse_claim(value: Any) -> ClaimType:
    try:
        return ClaimType.parse(value)
    except ValueError:
        raise vault_error(ZKV_E_BAD_REQUEST, "Unknown claim type", http_status=422) from None


def _parse_origin(value: Any) -> str:
    try:
        return normalize_origin(value)
    except ValueError:
        raise vault_error(ZKV_E_BAD_REQUEST, "Origin must be an absolute URL", http_status=422) from None


class RequestBroker:
    def __init__(
        self,
        *,
        vault: CredentialVault,
        attestations: AttestationStore,
        permissions: PermissionRegistry,
        settings: SettingsStore,
        generator: AttestationGenerator,
        registration: RegistrationClient,
        surfaces: Optional[InteractiveSurfaces] = None,
        surface_timeout_seconds: float = 300.0,
    ):
        self.vault = vault
        self.attestations = attestations
        self.permissions = permissions
        self.settings = settings
        self.generator = generator
        self.registration = registration
        self.surfaces = surfaces if surfaces is not None else SurfaceQueue()
        self.surface_timeout_seconds = float(surface_timeout_seconds)
        self.pending = PendingRegistry()

    @classmethod
    def from_config(
        cls,
        config: Optional[BrokerConfig] = None,
        *,
        engine: Optional[ProofEngine] = None,
        surfaces: Optional[InteractiveSurfaces] = None,
    ) -> "RequestBroker":
        config = config or BrokerConfig.from_env()
        store = VaultStore(config.db_path)
        vault = CredentialVault(store, iterations=config.pbkdf2_iterations)
        attestations = AttestationStore(store)
        settings = SettingsStore(store)
        engine = engine or HttpProofEngine(config.proof_engine_url, config.proof_engine_timeout_seconds)
        return cls(
            vault=vault,
            attestations=attestations,
            permissions=PermissionRegistry(store),
            settings=settings,
            generator=AttestationGenerator(engine, attestations, settings),
            registration=RegistrationClient(
                vault,
                timeout_seconds=config.registration_timeout_seconds,
                dev_hosts=config.dev_hosts,
            ),
            surfaces=surfaces,
            surface_timeout_seconds=config.surface_timeout_seconds,
        )

    async def dispatch(self, message: BrokerMessage) -> Any:
        handler = getattr(self, _HANDLERS[type(message)])
        return await handler(message)

    async def submit(self, request: RequestDisclosure) -> "asyncio.Future[DisclosureOutcome]":
        return await self.dispatch(request)

    # ---------------------------
    # Disclosure flow
    # ---------------------------

    async def _on_request_disclosure(self, msg: RequestDisclosure) -> "asyncio.Future[DisclosureOutcome]":
        if not isinstance(msg.request_id, str) or not msg.request_id:
            raise vault_error(ZKV_E_BAD_REQUEST, "requestId is required", http_status=422)
        origin = _parse_origin(msg.origin)
        claim_type = _parse_claim(msg.claim_type)
        if msg.request_id in self.pending:
            raise vault_error(ZKV_E_DUPLICATE_REQUEST, "Request id already pending", http_status=409)

        logger.info("Disclosure request %s from %s for %s", msg.request_id, origin, claim_type.value)
        future: asyncio.Future = asyncio.get_running_loop().create_future()

        attestation = self.attestations.get(claim_type)
        if attestation is None:
            state = DisclosureState.NO_ATTESTATION
        elif attestation.is_expired(_now_ms()):
            state = DisclosureState.EXPIRED
            attestation = None
        elif self.permissions.is_granted(origin, claim_type):
            logger.info("Request %s: %s already granted %s; returning directly", msg.request_id, origin, claim_type.value)
            outcome = await self._deliver(
                msg.request_id, origin, attestation, bool(msg.auto_register), msg.backend_url
            )
            future.set_result(outcome)
            return future
        else:
            state = DisclosureState.AWAITING_PERMISSION

        pending = PendingRequest(
            request_id=msg.request_id,
            origin=origin,
            claim_type=claim_type,
            auto_register=bool(msg.auto_register),
            backend_url=msg.backend_url,
            responder=future,
            state=state,
            attestation=attestation,
        )
        self.pending.add(pending, self.surface_timeout_seconds, self._on_deadline)
        future.add_done_callback(lambda f, rid=msg.request_id: self._on_responder_done(rid, f))
        logger.info("Request %s -> %s", msg.request_id, state.value)

        if pending.surface is SurfaceKind.CONSENT:
            self.surfaces.open_consent(pending.view())
        else:
            self.surfaces.open_generation(pending.view())
        return future

    async def _on_get_pending(self, msg: GetPendingRequest) -> Dict[str, Any]:
        return self._require(msg.request_id).view()

    async def _on_attach_attestation(self, msg: AttachAttestation) -> Dict[str, Any]:
        pending = self._require(msg.request_id)
        if pending.generating:
            raise vault_error(ZKV_E_BAD_REQUEST, "Generation already in progress", http_status=409)

        pending.generating = True
        try:
            attestation = await asyncio.to_thread(self.generator.generate, pending.claim_type, msg.private_evidence)
        finally:
            pending.generating = False

        # The surface may have been closed (or timed out) while proving.
        if self.pending.get(msg.request_id) is not pending:
            raise DisclosureError(
                DenialReason.USER_CANCELLED,
                _DENIAL_MESSAGES[DenialReason.USER_CANCELLED],
                request_id=msg.request_id,
            )

        pending.attestation = attestation
        logger.info("Request %s: attestation attached", msg.request_id)

        if self.permissions.is_granted(pending.origin, pending.claim_type):
            return (await self._approve(pending, grant=False)).as_dict()
        if self.settings.load().auto_approve:
            logger.info("Request %s: auto-approve enabled", msg.request_id)
            return (await self._approve(pending, grant=True)).as_dict()

        pending.state = DisclosureState.AWAITING_PERMISSION
        logger.info("Request %s -> %s", msg.request_id, pending.state.value)
        view = pending.view()
        self.surfaces.open_consent(view)
        return view

    async def _on_approve(self, msg: ApproveRequest) -> Dict[str, Any]:
        pending = self._require(msg.request_id)
        return (await self._approve(pending, grant=bool(msg.grant_permission))).as_dict()

    async def _on_deny(self, msg: DenyRequest) -> Dict[str, Any]:
        return self._deny(self._require(msg.request_id), DenialReason.PERMISSION_DENIED).as_dict()

    async def _on_surface_closed(self, msg: SurfaceClosed) -> Dict[str, Any]:
        return self._deny(self._require(msg.request_id), DenialReason.USER_CANCELLED).as_dict()

    def _on_deadline(self, request_id: str) -> None:
        pending = self.pending.get(request_id)
        if pending is not None:
            logger.info("Request %s: surface timed out", request_id)
            self._deny(pending, DenialReason.USER_CANCELLED)

    def _on_responder_done(self, request_id: str, future: asyncio.Future) -> None:
        # The caller stopped waiting; nobody is left to answer.
        if future.cancelled():
            pending = self.pending.get(request_id)
            if pending is not None and pending.responder is future:
                logger.info("Request %s: requester went away", request_id)
                self.pending.pop(request_id)
                self.surfaces.close(request_id)
                metrics.record_disclosure(pending.claim_type.value, "abandoned")

    def evict_all(self) -> int:
        """Resolve every pending request as cancelled (shutdown path)."""
        ids = self.pending.ids()
        for request_id in ids:
            pending = self.pending.get(request_id)
            if pending is not None:
                self._deny(pending, DenialReason.USER_CANCELLED)
        return len(ids)

    def _require(self, request_id: str) -> PendingRequest:
        pending = self.pending.get(request_id)
        if pending is None:
            raise DisclosureError(
                DenialReason.REQUEST_NOT_FOUND,
                _DENIAL_MESSAGES[DenialReason.REQUEST_NOT_FOUND],
                request_id=request_id,
            )
        return pending

    async def _approve(self, pending: PendingRequest, *, grant: bool) -> DisclosureOutcome:
        attestation = pending.attestation
        if attestation is None:
            # Nothing to disclose yet; the request stays open for generation.
            raise DisclosureError(
                DenialReason.PROOF_NOT_FOUND,
                _DENIAL_MESSAGES[DenialReason.PROOF_NOT_FOUND],
                request_id=pending.request_id,
            )
        # Destroy first: a close racing with registration must see RequestNotFound.
        self.pending.pop(pending.request_id)
        self.surfaces.close(pending.request_id)
        pending.state = DisclosureState.APPROVED
        if grant:
            self.permissions.grant(pending.origin, pending.claim_type)
        outcome = await self._deliver(
            pending.request_id, pending.origin, attestation, pending.auto_register, pending.backend_url
        )
        if not pending.responder.done():
            pending.responder.set_result(outcome)
        return outcome

    def _deny(self, pending: PendingRequest, reason: DenialReason) -> DisclosureOutcome:
        self.pending.pop(pending.request_id)
        self.surfaces.close(pending.request_id)
        outcome = DisclosureOutcome(
            request_id=pending.request_id,
            origin=pending.origin,
            claim_type=pending.claim_type,
            state=DisclosureState.DENIED,
            reason=reason,
        )
        if not pending.responder.done():
            pending.responder.set_result(outcome)
        metrics.record_disclosure(pending.claim_type.value, reason.value)
        logger.info("Request %s -> Denied (%s)", pending.request_id, reason.value)
        return outcome

    async def _deliver(
        self,
        request_id: str,
        origin: str,
        attestation: Attestation,
        auto_register: bool,
        backend_url: Optional[str],
    ) -> DisclosureOutcome:
        outcome = DisclosureOutcome(
            request_id=request_id,
            origin=origin,
            claim_type=attestation.claim_type,
            state=DisclosureState.DELIVERED,
            attestation=attestation.public_view(),
        )
        if auto_register and backend_url:
            try:
                result = await asyncio.to_thread(self.registration.register, attestation, backend_url)
            except RegistrationSkipped:
                outcome.registration_skipped = True
                metrics.record_registration("skipped")
            except RegistrationError as e:
                # Registration never blocks delivery.
                logger.warning("Request %s: registration failed (%s)", request_id, e.code)
                outcome.registration_error = e.code
                metrics.record_registration("failed")
            else:
                outcome.registration = result.as_dict()
                metrics.record_registration("ok")

        metrics.record_disclosure(attestation.claim_type.value, "delivered")
        logger.info("Request %s -> Delivered to %s", request_id, origin)
        return outcome

    # ---------------------------
    # Direct management
    # ---------------------------

    async def _on_generate(self, msg: GenerateAttestation) -> Dict[str, Any]:
        claim_type = _parse_claim(msg.claim_type)
        attestation = await asyncio.to_thread(self.generator.generate, claim_type, msg.private_evidence)
        return attestation.public_view()

    async def _on_list_attestations(self, msg: ListAttestations) -> Dict[str, Dict[str, Any]]:
        now = _now_ms()
        out: Dict[str, Dict[str, Any]] = {}
        for claim, attestation in self.attestations.list_all().items():
            out[claim] = dict(attestation.public_view(), expired=attestation.is_expired(now))
        return out

    async def _on_delete_attestation(self, msg: DeleteAttestation) -> bool:
        return self.attestations.delete(_parse_claim(msg.claim_type))

    async def _on_get_permissions(self, msg: GetPermissions) -> List[str]:
        return sorted(c.value for c in self.permissions.list_grants(_parse_origin(msg.origin)))

    async def _on_set_permission(self, msg: SetPermission) -> List[str]:
        origin = _parse_origin(msg.origin)
        claim_type = _parse_claim(msg.claim_type)
        if msg.granted:
            self.permissions.grant(origin, claim_type)
        else:
            self.permissions.revoke(origin, claim_type)
        return sorted(c.value for c in self.permissions.list_grants(origin))
