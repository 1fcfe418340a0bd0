import datetime
import json
import threading
from http.server import ThreadingHTTPServer

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.serialization import pkcs7
from cryptography.x509.oid import NameOID

from pdp_gateway.attestation import TrustAnchor


IDENTITY_DOCUMENT = {
    "accountId": "123456789012",
    "architecture": "x86_64",
    "availabilityZone": "us-east-1a",
    "imageId": "ami-0abcdef1234567890",
    "instanceId": "i-0123456789abcdef0",
    "instanceType": "t3.micro",
    "pendingTime": "2026-01-13T00:00:00Z",
    "privateIp": "10.0.1.10",
    "region": "us-east-1",
    "version": "2017-09-30",
}


def make_certificate(key, common_name="ec2.amazonaws.com"):
    name = x509.Name([
        x509.NameAttribute(NameOID.COUNTRY_NAME, "US"),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Amazon Web Services LLC"),
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
    ])
    now = datetime.datetime.now(datetime.timezone.utc)
    return (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=30))
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .sign(key, hashes.SHA256())
    )


class Signer:
    """Test-side stand-in for the platform's identity signing key."""

    def __init__(self, key):
        self.key = key
        self.certificate = make_certificate(key)

    @property
    def anchor(self):
        return TrustAnchor.from_pem(self.certificate.public_bytes(serialization.Encoding.PEM))

    def sign(self, document=None, *, encoding=serialization.Encoding.DER, attributes=True, hash_alg=None):
        if document is None:
            document = IDENTITY_DOCUMENT
        data = document if isinstance(document, bytes) else json.dumps(document, indent=2).encode("utf-8")
        options = [pkcs7.PKCS7Options.Binary]
        if not attributes:
            options.append(pkcs7.PKCS7Options.NoAttributes)
        return (
            pkcs7.PKCS7SignatureBuilder()
            .set_data(data)
            .add_signer(self.certificate, self.key, hash_alg or hashes.SHA256())
            .sign(encoding, options)
        )

    def imds_body(self, document=None):
        """The signed document as the metadata service serves it (PEM body, no armor)."""
        pem = self.sign(document, encoding=serialization.Encoding.PEM).decode("ascii")
        return "\n".join(line for line in pem.strip().splitlines() if not line.startswith("-----")).encode("ascii")


@pytest.fixture(scope="session")
def rsa_signer():
    return Signer(rsa.generate_private_key(public_exponent=65537, key_size=2048))


@pytest.fixture(scope="session")
def ec_signer():
    return Signer(ec.generate_private_key(ec.SECP256R1()))


@pytest.fixture(scope="session")
def identity_document():
    return dict(IDENTITY_DOCUMENT)


def serve(handler_cls):
    """Start ``handler_cls`` on an ephemeral port; returns (base_url, shutdown)."""
    httpd = ThreadingHTTPServer(("127.0.0.1", 0), handler_cls)
    httpd.daemon_threads = True
    host, port = httpd.server_address[:2]
    t = threading.Thread(target=httpd.serve_forever, daemon=True)
    t.start()

    def shutdown():
        httpd.shutdown()
        httpd.server_close()
        t.join(timeout=2)

    return f"http://{host}:{port}", shutdown
