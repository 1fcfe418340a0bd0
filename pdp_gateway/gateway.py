"""pdp_gateway.gateway

Per-request authorization pipeline.

    verify_identity -> resolve_privilege -> build_input -> request_decision

Each stage takes and returns an immutable ``AuthorizationContext``. Stages
raise ``GatewayError`` subclasses; ``evaluate`` is the one place that catches
them and turns them into a tagged ``AuthorizationOutcome``. Nothing here ever
turns an error into an allow: a request is permitted only when the decision
endpoint returned ``result: true``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Callable, Optional, Tuple

from .attestation import (
    AttestationClaims,
    InstanceTrustVerifier,
    TrustAnchor,
    decode_attestation_header,
)
from .config import DEFAULT_ATTESTATION_HEADER, GatewayConfig
from .context import CloudContext, DecisionInput, RequestContextBuilder, RequestMeta
from .credentials import CredentialRotator
from .decision import DecisionClient, DecisionVerdict
from .errors import (
    PDP_E_ATTESTATION_MISSING,
    PDP_E_DENIED,
    PDP_E_TRUST_ANCHOR_MISSING,
    AuthnError,
    AuthzError,
    ErrorKind,
    GatewayError,
)
from .metadata import InstanceMetadataClient
from .metrics import record_decision, record_error
from .privilege import PrivilegeDescriptor, PrivilegeResolver

logger = logging.getLogger("pdp_gateway")


@dataclass(frozen=True)
class AuthorizationContext:
    request: RequestMeta
    claims: Optional[AttestationClaims] = None
    privilege: Optional[PrivilegeDescriptor] = None
    decision_input: Optional[DecisionInput] = None
    verdict: Optional[DecisionVerdict] = None


@dataclass(frozen=True)
class AuthorizationOutcome:
    permitted: bool
    kind: Optional[ErrorKind] = None
    error: Optional[GatewayError] = None
    verdict: Optional[DecisionVerdict] = None
    decision_input: Optional[DecisionInput] = None

    @property
    def failure(self) -> Optional[GatewayError]:
        """The error blocking this request, or None when it is permitted."""
        if self.permitted:
            return None
        return self.error or AuthzError(code=PDP_E_DENIED, message="Request not permitted")

    def raise_for_outcome(self) -> DecisionVerdict:
        failure = self.failure
        if failure is not None:
            raise failure
        if self.verdict is None:
            raise RuntimeError("permitted outcome carries no verdict")
        return self.verdict


Stage = Callable[[AuthorizationContext], AuthorizationContext]


class AuthorizationGateway:
    def __init__(
        self,
        endpoint: str,
        *,
        decision_client: Optional[DecisionClient] = None,
        context_builder: Optional[RequestContextBuilder] = None,
        verifier: Optional[InstanceTrustVerifier] = None,
        privilege_resolver: Optional[PrivilegeResolver] = None,
        attestation_header: str = DEFAULT_ATTESTATION_HEADER,
        require_attestation: bool = False,
    ):
        self.endpoint = endpoint
        self.decision_client = decision_client or DecisionClient()
        self.context_builder = context_builder or RequestContextBuilder()
        self.verifier = verifier
        self.privilege_resolver = privilege_resolver
        self.attestation_header = attestation_header
        self.require_attestation = bool(require_attestation)

    @classmethod
    def from_config(
        cls,
        config: Optional[GatewayConfig] = None,
        *,
        metadata: Optional[InstanceMetadataClient] = None,
    ) -> "AuthorizationGateway":
        config = config or GatewayConfig.from_env()

        verifier = None
        resolver = None
        if config.trust_anchor_file:
            verifier = InstanceTrustVerifier(TrustAnchor.from_file(config.trust_anchor_file))
            rotator = CredentialRotator(
                metadata or InstanceMetadataClient(config.imds_endpoint),
                refresh_margin_s=config.credential_refresh_margin_s,
            )
            resolver = PrivilegeResolver(rotator)

        return cls(
            config.pdp_endpoint,
            decision_client=DecisionClient(
                connection_timeout_ms=config.connection_timeout_ms,
                read_timeout_ms=config.read_timeout_ms,
                retry_max_attempts=config.retry_max_attempts,
                retry_backoff_ms=config.retry_backoff_ms,
            ),
            verifier=verifier,
            privilege_resolver=resolver,
            attestation_header=config.attestation_header,
            require_attestation=config.require_attestation,
        )

    # ---------------------------
    # Stages
    # ---------------------------

    def stages(self) -> Tuple[Stage, ...]:
        return (self.verify_identity, self.resolve_privilege, self.build_input, self.request_decision)

    def verify_identity(self, ctx: AuthorizationContext) -> AuthorizationContext:
        value = ctx.request.header(self.attestation_header)
        if value is None:
            if self.require_attestation:
                raise AuthnError(
                    code=PDP_E_ATTESTATION_MISSING,
                    message=f"Missing {self.attestation_header} header",
                )
            return ctx
        # A header we cannot verify is never treated as an absent one.
        if self.verifier is None:
            raise AuthnError(
                code=PDP_E_TRUST_ANCHOR_MISSING,
                message="Attestation presented but no trust anchor is configured",
            )
        claims = self.verifier.verify(decode_attestation_header(value))
        return replace(ctx, claims=claims)

    def resolve_privilege(self, ctx: AuthorizationContext) -> AuthorizationContext:
        if ctx.claims is None or self.privilege_resolver is None:
            return ctx
        privilege = self.privilege_resolver.resolve(ctx.claims.instance_id, ctx.claims.region)
        return replace(ctx, privilege=privilege)

    def build_input(self, ctx: AuthorizationContext) -> AuthorizationContext:
        cloud = None
        if ctx.claims is not None:
            cloud = CloudContext(
                identity=dict(ctx.claims.document),
                privilege=ctx.privilege.to_dict() if ctx.privilege is not None else None,
            )
        return replace(ctx, decision_input=self.context_builder.build(ctx.request, cloud=cloud))

    def request_decision(self, ctx: AuthorizationContext) -> AuthorizationContext:
        if ctx.decision_input is None:
            raise RuntimeError("request_decision ran before build_input")
        verdict = self.decision_client.decide(self.endpoint, ctx.decision_input.to_dict())
        return replace(ctx, verdict=verdict)

    # ---------------------------
    # Entry points
    # ---------------------------

    def evaluate(self, request_meta: RequestMeta) -> AuthorizationOutcome:
        ctx = AuthorizationContext(request=request_meta)
        try:
            for stage in self.stages():
                ctx = stage(ctx)
        except GatewayError as e:
            self._log_failure(request_meta, e)
            record_error(e.kind.value)
            record_decision(e.kind.value)
            return AuthorizationOutcome(
                permitted=False,
                kind=e.kind,
                error=e,
                verdict=ctx.verdict,
                decision_input=ctx.decision_input,
            )

        verdict = ctx.verdict
        if verdict is None:
            raise RuntimeError("pipeline finished without a verdict")
        if not verdict.allowed:
            denied = AuthzError(
                code=PDP_E_DENIED,
                message=f"{request_meta.method} {request_meta.path} denied by policy",
                details={"decision_id": verdict.decision_id},
            )
            logger.info(
                "Denied %s %s (decision_id=%s)",
                request_meta.method, request_meta.path, verdict.decision_id or "-",
            )
            record_decision("deny")
            return AuthorizationOutcome(
                permitted=False,
                kind=ErrorKind.AUTHZ,
                error=denied,
                verdict=verdict,
                decision_input=ctx.decision_input,
            )

        logger.debug(
            "Allowed %s %s (decision_id=%s)",
            request_meta.method, request_meta.path, verdict.decision_id or "-",
        )
        record_decision("allow")
        return AuthorizationOutcome(permitted=True, verdict=verdict, decision_input=ctx.decision_input)

    def authorize(self, request_meta: RequestMeta) -> DecisionVerdict:
        """Verdict for an allowed request; raises the classified error otherwise."""
        return self.evaluate(request_meta).raise_for_outcome()

    async def evaluate_async(self, request_meta: RequestMeta) -> AuthorizationOutcome:
        return await asyncio.to_thread(self.evaluate, request_meta)

    async def authorize_async(self, request_meta: RequestMeta) -> DecisionVerdict:
        outcome = await self.evaluate_async(request_meta)
        return outcome.raise_for_outcome()

    @staticmethod
    def _log_failure(request_meta: RequestMeta, e: GatewayError) -> None:
        if e.kind is ErrorKind.DEPENDENCY:
            logger.error("Could not authorize %s %s: %s", request_meta.method, request_meta.path, e)
        elif e.kind is ErrorKind.AUTHZ:
            logger.info("Denied %s %s: %s", request_meta.method, request_meta.path, e)
        else:
            logger.warning("Rejected %s %s (%s): %s", request_meta.method, request_meta.path, e.kind.value, e)
