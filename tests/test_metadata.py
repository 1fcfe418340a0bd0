import json
from http.server import BaseHTTPRequestHandler

import pytest

from conftest import IDENTITY_DOCUMENT, serve
from pdp_gateway.credentials import CredentialRotator
from pdp_gateway.errors import (
    PDP_E_CREDENTIALS_INVALID,
    PDP_E_METADATA_UNAVAILABLE,
    DependencyError,
    ErrorKind,
)
from pdp_gateway.metadata import TOKEN_TTL_HEADER, InstanceMetadataClient

CREDENTIALS = {
    "Code": "Success",
    "LastUpdated": "2026-01-13T00:00:00Z",
    "Type": "AWS-HMAC",
    "AccessKeyId": "ASIAEXAMPLE",
    "SecretAccessKey": "secret",
    "Token": "session-token",
    "Expiration": "2026-01-13T06:00:00Z",
}


class _IMDSHandler(BaseHTTPRequestHandler):
    routes = {}
    token_status = 200
    gets = []
    puts = []

    def do_PUT(self):  # noqa: N802
        _IMDSHandler.puts.append(self.headers.get(TOKEN_TTL_HEADER))
        if self.path != "/latest/api/token" or _IMDSHandler.token_status != 200:
            self.send_response(_IMDSHandler.token_status if _IMDSHandler.token_status != 200 else 404)
            self.end_headers()
            return
        self._reply(200, b"tok-1")

    def do_GET(self):  # noqa: N802
        _IMDSHandler.gets.append((self.path, self.headers.get("X-aws-ec2-metadata-token")))
        if self.path not in _IMDSHandler.routes:
            self._reply(404, b"Not Found")
            return
        status, body = _IMDSHandler.routes[self.path]
        self._reply(status, body)

    def _reply(self, status, body):
        self.send_response(status)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):  # noqa: A003
        return


@pytest.fixture
def imds():
    _IMDSHandler.routes = {
        "/latest/dynamic/instance-identity/document": (200, json.dumps(IDENTITY_DOCUMENT).encode()),
        "/latest/dynamic/instance-identity/pkcs7": (200, b"MIAGCSqGSIb3DQEHAqCAMIACAQExDzANBglghkgBZQMEAgEFADCABgkqhkiG9w0BBwGggCSA\n"),
        "/latest/meta-data/iam/security-credentials/": (200, b"web-role\n"),
        "/latest/meta-data/iam/security-credentials/web-role": (200, json.dumps(CREDENTIALS).encode()),
        "/latest/meta-data/iam/info": (200, b'{"Code": "Success", "InstanceProfileArn": "arn:aws:iam::123456789012:instance-profile/web"}'),
    }
    _IMDSHandler.token_status = 200
    _IMDSHandler.gets = []
    _IMDSHandler.puts = []
    base, shutdown = serve(_IMDSHandler)
    try:
        yield base
    finally:
        shutdown()


def _client(base, **kw):
    return InstanceMetadataClient(base, sleep=lambda s: None, **kw)


def test_identity_document(imds):
    doc = _client(imds).identity_document()
    assert doc.instance_id == "i-0123456789abcdef0"
    assert doc.region == "us-east-1"
    assert doc.account_id == "123456789012"


def test_session_token_is_requested_once_and_sent(imds):
    client = _client(imds)
    client.identity_document()
    client.get_signed_document()

    assert len(_IMDSHandler.puts) == 1
    assert _IMDSHandler.puts[0] == "21600"
    assert [tok for _, tok in _IMDSHandler.gets] == ["tok-1", "tok-1"]


def test_falls_back_to_tokenless_requests(imds):
    _IMDSHandler.token_status = 405
    client = _client(imds)

    assert client.get_signed_document().startswith(b"MIAGCSqGSIb3")
    client.get_signed_document()

    assert len(_IMDSHandler.puts) == 1
    assert [tok for _, tok in _IMDSHandler.gets] == [None, None]


def test_security_credentials_for_listed_role(imds):
    client = _client(imds)
    assert client.role_name() == "web-role"

    creds = client.security_credentials()
    assert creds.access_key_id == "ASIAEXAMPLE"
    assert creds.secret_access_key == "secret"
    assert creds.token == "session-token"
    assert creds.expiration.year == 2026
    assert creds.expiration.tzinfo is not None


def test_failed_credentials_code(imds):
    bad = dict(CREDENTIALS, Code="AssumeRoleUnauthorizedAccess")
    _IMDSHandler.routes["/latest/meta-data/iam/security-credentials/web-role"] = (200, json.dumps(bad).encode())

    with pytest.raises(DependencyError) as ei:
        _client(imds).security_credentials()
    assert ei.value.code == PDP_E_CREDENTIALS_INVALID


def test_no_role_attached(imds):
    _IMDSHandler.routes["/latest/meta-data/iam/security-credentials/"] = (200, b"")

    with pytest.raises(DependencyError) as ei:
        _client(imds).role_name()
    assert ei.value.code == PDP_E_CREDENTIALS_INVALID


def test_missing_path_is_not_retried(imds):
    with pytest.raises(DependencyError) as ei:
        _client(imds).get("/latest/meta-data/does-not-exist")

    err = ei.value
    assert err.code == PDP_E_METADATA_UNAVAILABLE
    assert err.kind is ErrorKind.DEPENDENCY
    assert err.details["status"] == 404
    assert len(_IMDSHandler.gets) == 1


def test_server_errors_are_retried(imds):
    _IMDSHandler.routes["/latest/meta-data/iam/info"] = (500, b"oops")
    sleeps = []
    client = InstanceMetadataClient(imds, max_attempts=3, backoff_s=0.1, sleep=sleeps.append)

    with pytest.raises(DependencyError) as ei:
        client.iam_info()

    assert ei.value.details["attempts"] == 3
    assert sleeps == [0.1, 0.2]
    assert len(_IMDSHandler.gets) == 3


class _GarbageHandler(BaseHTTPRequestHandler):
    requests = 0

    def _garbage(self):
        _GarbageHandler.requests += 1
        self.wfile.write(b"garbage-not-http\r\n")

    do_GET = _garbage  # noqa: N815
    do_PUT = _garbage  # noqa: N815

    def log_message(self, format, *args):  # noqa: A003
        return


@pytest.fixture
def garbage_imds():
    _GarbageHandler.requests = 0
    base, shutdown = serve(_GarbageHandler)
    try:
        yield base
    finally:
        shutdown()


def test_malformed_status_line_is_retried_then_dependency_error(garbage_imds):
    sleeps = []
    client = InstanceMetadataClient(garbage_imds, max_attempts=3, backoff_s=0.1, sleep=sleeps.append)

    with pytest.raises(DependencyError) as ei:
        client.get_signed_document()

    err = ei.value
    assert err.code == PDP_E_METADATA_UNAVAILABLE
    assert err.details["attempts"] == 3
    assert "BadStatusLine" in err.details["error"]
    assert sleeps == [0.1, 0.2]


def test_malformed_status_line_surfaces_through_rotator(garbage_imds):
    rotator = CredentialRotator(_client(garbage_imds), client_factory=lambda creds: (None, None))

    with pytest.raises(DependencyError):
        rotator.snapshot()
