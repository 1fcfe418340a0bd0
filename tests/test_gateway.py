import json
import socket
from http.server import BaseHTTPRequestHandler

import pytest
from prometheus_client import REGISTRY

from conftest import serve
from pdp_gateway.attestation import InstanceTrustVerifier, encode_attestation_header
from pdp_gateway.config import GatewayConfig
from pdp_gateway.context import Address, RequestMeta, normalize_headers
from pdp_gateway.decision import DecisionClient
from pdp_gateway.errors import (
    PDP_E_ATTESTATION_MISSING,
    PDP_E_DENIED,
    PDP_E_PRIVILEGE_LOOKUP,
    PDP_E_TRUST_ANCHOR_MISSING,
    AuthnError,
    AuthzError,
    DependencyError,
    ErrorKind,
    TransportError,
)
from pdp_gateway.gateway import AuthorizationGateway, AuthorizationOutcome
from pdp_gateway.privilege import PrivilegeDescriptor, RoleDescriptor


class _PDPHandler(BaseHTTPRequestHandler):
    result = True
    inputs = []

    def do_POST(self):  # noqa: N802
        length = int(self.headers.get("Content-Length", "0") or "0")
        _PDPHandler.inputs.append(json.loads(self.rfile.read(length))["input"])
        body = json.dumps({"decision_id": f"d-{len(_PDPHandler.inputs)}", "result": _PDPHandler.result}).encode()
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):  # noqa: A003
        return


@pytest.fixture
def pdp():
    _PDPHandler.result = True
    _PDPHandler.inputs = []
    base, shutdown = serve(_PDPHandler)
    try:
        yield base + "/v1/data/authz/allow"
    finally:
        shutdown()


class FakeResolver:
    def __init__(self, privilege=None, error=None):
        self.privilege = privilege
        self.error = error
        self.calls = []

    def resolve(self, instance_id, region=None):
        self.calls.append((instance_id, region))
        if self.error is not None:
            raise self.error
        return self.privilege


WEB_PROFILE = PrivilegeDescriptor(
    name="web",
    arn="arn:aws:iam::123456789012:instance-profile/web",
    profile_id="AIPAEXAMPLE",
    roles=(RoleDescriptor("web-role", "arn:aws:iam::123456789012:role/web-role", "AROAEXAMPLE"),),
)


def _request(headers=None):
    return RequestMeta(
        scheme="http",
        method="GET",
        path="/orders",
        query_string="id=42",
        headers=normalize_headers(headers or {"Accept": "application/json"}),
        source=Address("10.0.1.20", 51515),
        destination=Address("10.0.1.10", 8080),
    )


def _attested_request(signer):
    return _request({
        "Accept": "application/json",
        "Aws-Signed-Metadata": encode_attestation_header(signer.imds_body()),
    })


def _sample(name, labels):
    return REGISTRY.get_sample_value(name, labels) or 0.0


def test_allow_without_attestation(pdp):
    gw = AuthorizationGateway(pdp)
    verdict = gw.authorize(_request())

    assert verdict.allowed is True
    assert verdict.decision_id == "d-1"
    sent = _PDPHandler.inputs[0]
    assert sent["request"] == {
        "scheme": "http",
        "method": "GET",
        "path": "/orders",
        "query": {"id": ["42"]},
        "headers": {"HTTP_ACCEPT": "application/json"},
    }
    assert sent["source"] == {"ipAddress": "10.0.1.20", "port": 51515}
    assert "cloud" not in sent


def test_deny_raises_authz_error(pdp):
    _PDPHandler.result = False
    before = _sample("pdp_gateway_decisions_total", {"outcome": "deny"})

    with pytest.raises(AuthzError) as ei:
        AuthorizationGateway(pdp).authorize(_request())

    err = ei.value
    assert type(err) is AuthzError
    assert err.kind is ErrorKind.AUTHZ
    assert err.code == PDP_E_DENIED
    assert err.http_status == 403
    assert err.details["decision_id"] == "d-1"
    assert _sample("pdp_gateway_decisions_total", {"outcome": "deny"}) == before + 1


def test_evaluate_returns_tagged_outcome(pdp):
    _PDPHandler.result = False
    outcome = AuthorizationGateway(pdp).evaluate(_request())

    assert outcome.permitted is False
    assert outcome.kind is ErrorKind.AUTHZ
    assert outcome.verdict.allowed is False
    assert outcome.decision_input.path == "/orders"


def test_attested_request_carries_identity_and_privilege(pdp, rsa_signer):
    resolver = FakeResolver(privilege=WEB_PROFILE)
    gw = AuthorizationGateway(pdp, verifier=InstanceTrustVerifier(rsa_signer.anchor), privilege_resolver=resolver)

    gw.authorize(_attested_request(rsa_signer))

    assert resolver.calls == [("i-0123456789abcdef0", "us-east-1")]
    cloud = _PDPHandler.inputs[0]["cloud"]
    assert cloud["identity"]["instanceId"] == "i-0123456789abcdef0"
    assert cloud["privilege"]["name"] == "web"
    assert cloud["privilege"]["roles"][0]["name"] == "web-role"


def test_attested_request_without_profile_has_null_privilege(pdp, rsa_signer):
    gw = AuthorizationGateway(
        pdp, verifier=InstanceTrustVerifier(rsa_signer.anchor), privilege_resolver=FakeResolver()
    )
    gw.authorize(_attested_request(rsa_signer))

    cloud = _PDPHandler.inputs[0]["cloud"]
    assert cloud["privilege"] is None
    assert cloud["identity"]["region"] == "us-east-1"


def test_invalid_attestation_never_reaches_pdp(pdp, rsa_signer, ec_signer):
    resolver = FakeResolver(privilege=WEB_PROFILE)
    gw = AuthorizationGateway(pdp, verifier=InstanceTrustVerifier(rsa_signer.anchor), privilege_resolver=resolver)

    outcome = gw.evaluate(_attested_request(ec_signer))

    assert outcome.permitted is False
    assert outcome.kind is ErrorKind.AUTHN
    assert isinstance(outcome.error, AuthnError)
    assert outcome.decision_input is None
    assert _PDPHandler.inputs == []
    assert resolver.calls == []


def test_empty_attestation_header_is_not_treated_as_absent(pdp, rsa_signer):
    gw = AuthorizationGateway(pdp, verifier=InstanceTrustVerifier(rsa_signer.anchor))

    with pytest.raises(AuthnError):
        gw.authorize(_request({"Aws-Signed-Metadata": ""}))
    assert _PDPHandler.inputs == []


def test_attestation_without_trust_anchor_fails_closed(pdp, rsa_signer):
    with pytest.raises(AuthnError) as ei:
        AuthorizationGateway(pdp).authorize(_attested_request(rsa_signer))
    assert ei.value.code == PDP_E_TRUST_ANCHOR_MISSING


def test_required_attestation(pdp, rsa_signer):
    gw = AuthorizationGateway(pdp, verifier=InstanceTrustVerifier(rsa_signer.anchor), require_attestation=True)

    with pytest.raises(AuthnError) as ei:
        gw.authorize(_request())
    assert ei.value.code == PDP_E_ATTESTATION_MISSING


def test_dependency_failure_keeps_its_kind(pdp, rsa_signer, caplog):
    error = DependencyError(code=PDP_E_PRIVILEGE_LOOKUP, message="throttled")
    gw = AuthorizationGateway(
        pdp, verifier=InstanceTrustVerifier(rsa_signer.anchor), privilege_resolver=FakeResolver(error=error)
    )
    before = _sample("pdp_gateway_errors_total", {"kind": "dependency"})

    with caplog.at_level("ERROR", logger="pdp_gateway"):
        outcome = gw.evaluate(_attested_request(rsa_signer))

    assert outcome.kind is ErrorKind.DEPENDENCY
    assert outcome.error is error
    assert _PDPHandler.inputs == []
    assert "throttled" in caplog.text
    assert _sample("pdp_gateway_errors_total", {"kind": "dependency"}) == before + 1


def test_unreachable_pdp_is_transport_not_deny():
    s = socket.socket()
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    gw = AuthorizationGateway(
        f"http://127.0.0.1:{port}/v1/data/authz/allow",
        decision_client=DecisionClient(retry_max_attempts=0),
    )

    outcome = gw.evaluate(_request())
    assert outcome.permitted is False
    assert outcome.kind is ErrorKind.TRANSPORT
    assert isinstance(outcome.error, TransportError)
    assert outcome.decision_input is not None

    with pytest.raises(AuthzError) as ei:
        gw.authorize(_request())
    assert ei.value.kind is ErrorKind.TRANSPORT


@pytest.mark.asyncio
async def test_async_entry_points(pdp):
    gw = AuthorizationGateway(pdp)

    verdict = await gw.authorize_async(_request())
    assert verdict.allowed is True

    _PDPHandler.result = False
    outcome = await gw.evaluate_async(_request())
    assert outcome.kind is ErrorKind.AUTHZ
    with pytest.raises(AuthzError):
        await gw.authorize_async(_request())


def test_from_config(tmp_path, rsa_signer):
    from cryptography.hazmat.primitives import serialization

    anchor = tmp_path / "anchor.pem"
    anchor.write_bytes(rsa_signer.certificate.public_bytes(serialization.Encoding.PEM))
    cfg = GatewayConfig(
        hostname="pdp.internal",
        port=9000,
        policy_path="orders/allow",
        retry_max_attempts=1,
        trust_anchor_file=str(anchor),
        require_attestation=True,
    )

    gw = AuthorizationGateway.from_config(cfg)

    assert gw.endpoint == "http://pdp.internal:9000/v1/data/orders/allow"
    assert gw.decision_client.retry_max_attempts == 1
    assert gw.verifier is not None
    assert gw.privilege_resolver is not None
    assert gw.require_attestation is True
    assert AuthorizationGateway.from_config(GatewayConfig()).verifier is None


def test_outcome_without_error_still_blocks():
    outcome = AuthorizationOutcome(permitted=False)

    assert isinstance(outcome.failure, AuthzError)
    assert outcome.failure.code == PDP_E_DENIED
    with pytest.raises(AuthzError):
        outcome.raise_for_outcome()


def test_permitted_outcome_without_verdict_is_an_error():
    with pytest.raises(RuntimeError):
        AuthorizationOutcome(permitted=True).raise_for_outcome()


def test_unparseable_endpoint_is_classified():
    gw = AuthorizationGateway("http://localhost:81x1/v1/data/authz/allow")

    outcome = gw.evaluate(_request())
    assert outcome.permitted is False
    assert outcome.kind is ErrorKind.TRANSPORT
