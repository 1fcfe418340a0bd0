"""Instance identity attestations.

An attestation is the PKCS7 (CMS SignedData) instance-identity document the
cloud metadata service hands out, with the JSON identity document attached as
content:

    {"instanceId": "i-...", "accountId": "...", "region": "us-east-1",
     "pendingTime": "...", ...}

Verification model:
- The signer is looked up ONLY among the explicitly supplied trust anchor
  certificates (issuer + serial number, or subject key identifier).
  Certificates embedded in the envelope are ignored and the anchor itself is
  not chain-validated, i.e. trust is pinned to the platform's published
  signing certificate rather than to any CA store.
- With signed attributes, the messageDigest attribute must match the content
  and the signature covers the DER encoding of the attributes (as a SET OF).
  Without them, the signature covers the content directly.
- Every failure is an AuthnError. Callers must not treat an unverifiable
  attestation as an absent one.

Header encoding (ingress and egress): base64url of the PEM-armored document.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional, Tuple

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import dsa, ec, padding, rsa
from pyasn1.codec.ber import decoder as ber_decoder
from pyasn1.codec.der import encoder as der_encoder
from pyasn1.error import PyAsn1Error
from pyasn1.type import univ
from pyasn1_modules import rfc5652

from .errors import (
    PDP_E_ATTESTATION_CLAIMS,
    PDP_E_ATTESTATION_MALFORMED,
    PDP_E_ATTESTATION_SIGNATURE,
    PDP_E_ATTESTATION_UNTRUSTED_SIGNER,
    PDP_E_TRUST_ANCHOR_MISSING,
    AuthnError,
)

PKCS7_PEM_HEADER = "-----BEGIN PKCS7-----"
PKCS7_PEM_FOOTER = "-----END PKCS7-----"

_PEM_BODY_RE = re.compile(rb"-----BEGIN [A-Z0-9 ]+-----(.*?)-----END [A-Z0-9 ]+-----", re.DOTALL)

# digestAlgorithm OID -> (cryptography hash, hashlib name)
_DIGESTS: Dict[str, Tuple[type, str]] = {
    "1.3.14.3.2.26": (hashes.SHA1, "sha1"),
    "2.16.840.1.101.3.4.2.4": (hashes.SHA224, "sha224"),
    "2.16.840.1.101.3.4.2.1": (hashes.SHA256, "sha256"),
    "2.16.840.1.101.3.4.2.2": (hashes.SHA384, "sha384"),
    "2.16.840.1.101.3.4.2.3": (hashes.SHA512, "sha512"),
}

_RSASSA_PSS = "1.2.840.113549.1.1.10"


# ---------------------------
# Trust anchor
# ---------------------------

@dataclass(frozen=True)
class TrustAnchor:
    """Certificate(s) allowed to sign instance identity documents.

    Loaded once at startup and shared read-only; rotation means a restart.
    """

    certificates: Tuple[x509.Certificate, ...]

    def __post_init__(self) -> None:
        if not self.certificates:
            raise ValueError("trust anchor requires at least one certificate")

    @classmethod
    def from_pem(cls, data: bytes) -> "TrustAnchor":
        return cls(tuple(x509.load_pem_x509_certificates(bytes(data))))

    @classmethod
    def from_certificates(cls, certificates: Iterable[x509.Certificate]) -> "TrustAnchor":
        return cls(tuple(certificates))

    @classmethod
    def from_file(cls, path: str) -> "TrustAnchor":
        with open(path, "rb") as f:
            return cls.from_pem(f.read())

    @classmethod
    def from_env(cls, env_name: str = "PDP_TRUST_ANCHOR_FILE") -> Optional["TrustAnchor"]:
        path = (os.getenv(env_name, "") or "").strip()
        if not path:
            return None
        return cls.from_file(path)


# ---------------------------
# Claims
# ---------------------------

@dataclass(frozen=True)
class AttestationClaims:
    """Verified identity claims. ``document`` is the payload exactly as signed."""

    instance_id: str
    region: str
    account_id: Optional[str] = None
    issued_at: Optional[str] = None
    document: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_document(cls, document: Any) -> "AttestationClaims":
        if not isinstance(document, dict):
            raise AuthnError(
                code=PDP_E_ATTESTATION_CLAIMS,
                message="Attestation payload must be a JSON object",
            )
        instance_id = document.get("instanceId")
        region = document.get("region")
        for name, value in (("instanceId", instance_id), ("region", region)):
            if not isinstance(value, str) or not value.strip():
                raise AuthnError(
                    code=PDP_E_ATTESTATION_CLAIMS,
                    message=f"Attestation payload is missing {name}",
                    details={"field": name},
                )
        account_id = document.get("accountId")
        issued_at = document.get("pendingTime", document.get("issuedAt"))
        return cls(
            instance_id=instance_id,
            region=region,
            account_id=account_id if isinstance(account_id, str) else None,
            issued_at=issued_at if isinstance(issued_at, str) else None,
            document=document,
        )


# ---------------------------
# Header encoding
# ---------------------------

def armor_pkcs7(body: bytes) -> bytes:
    """Wrap a bare base64 PKCS7 body (as served by the metadata service) in PEM armor."""
    text = bytes(body).decode("ascii").strip()
    return f"{PKCS7_PEM_HEADER}\n{text}\n{PKCS7_PEM_FOOTER}".encode("ascii")


def encode_attestation_header(signed_document: bytes) -> str:
    """Header value for a signed document (PEM-armored or bare base64 body)."""
    data = bytes(signed_document).strip()
    if not data.startswith(b"-----BEGIN"):
        data = armor_pkcs7(data)
    return base64.urlsafe_b64encode(data).decode("ascii")


def decode_attestation_header(value: str) -> bytes:
    """Decode a header value to the signed document bytes (padding optional)."""
    text = (value or "").strip()
    if not text:
        raise AuthnError(code=PDP_E_ATTESTATION_MALFORMED, message="Attestation header is empty")
    text += "=" * (-len(text) % 4)
    try:
        return base64.urlsafe_b64decode(text.encode("ascii"))
    except (binascii.Error, ValueError, UnicodeEncodeError) as e:
        raise AuthnError(
            code=PDP_E_ATTESTATION_MALFORMED,
            message="Attestation header is not valid base64url",
        ) from e


def _to_der(signed_attestation: bytes) -> bytes:
    raw = bytes(signed_attestation)
    # Binary DER is returned untouched; its trailing bytes may look like whitespace.
    if raw[:1] == b"\x30":
        return raw
    data = raw.strip()
    if not data:
        raise AuthnError(code=PDP_E_ATTESTATION_MALFORMED, message="Attestation is empty")
    m = _PEM_BODY_RE.search(data)
    body = m.group(1) if m else data
    try:
        return base64.b64decode(b"".join(body.split()), validate=True)
    except (binascii.Error, ValueError) as e:
        raise AuthnError(
            code=PDP_E_ATTESTATION_MALFORMED,
            message="Attestation is neither DER, PEM nor base64",
        ) from e


# ---------------------------
# Verifier
# ---------------------------

def _decode(substrate: bytes, spec: Any) -> Any:
    value, rest = ber_decoder.decode(substrate, asn1Spec=spec)
    if rest:
        raise ValueError("trailing data after ASN.1 structure")
    return value


def _attribute(signed_attrs: Any, oid: univ.ObjectIdentifier, spec: Any) -> Optional[Any]:
    for attr in signed_attrs:
        if attr["attrType"] == oid:
            values = attr["attrValues"]
            if len(values) != 1:
                raise ValueError(f"attribute {oid} must have exactly one value")
            return _decode(values[0].asOctets(), spec)
    return None


def _find_signer_certificate(sid: Any, anchor: TrustAnchor) -> Optional[x509.Certificate]:
    choice = sid.getName()
    if choice == "issuerAndSerialNumber":
        isn = sid["issuerAndSerialNumber"]
        serial = int(isn["serialNumber"])
        issuer_der = der_encoder.encode(isn["issuer"])
        for cert in anchor.certificates:
            if cert.serial_number == serial and cert.issuer.public_bytes() == issuer_der:
                return cert
        return None
    if choice == "subjectKeyIdentifier":
        ski = sid["subjectKeyIdentifier"].asOctets()
        for cert in anchor.certificates:
            try:
                ext = cert.extensions.get_extension_for_class(x509.SubjectKeyIdentifier)
            except x509.ExtensionNotFound:
                continue
            if ext.value.digest == ski:
                return cert
        return None
    return None


def _verify_signature(cert: x509.Certificate, signature: bytes, message: bytes, hash_alg: hashes.HashAlgorithm) -> None:
    """Raise InvalidSignature unless ``signature`` is valid for ``message``."""
    key = cert.public_key()
    if isinstance(key, rsa.RSAPublicKey):
        key.verify(signature, message, padding.PKCS1v15(), hash_alg)
    elif isinstance(key, dsa.DSAPublicKey):
        key.verify(signature, message, hash_alg)
    elif isinstance(key, ec.EllipticCurvePublicKey):
        key.verify(signature, message, ec.ECDSA(hash_alg))
    else:
        raise UnsupportedAlgorithm(f"unsupported signer key type: {type(key).__name__}")


class InstanceTrustVerifier:
    """Verifies signed instance identity documents against a pinned trust anchor."""

    def __init__(self, trust_anchor: Optional[TrustAnchor] = None):
        self.trust_anchor = trust_anchor

    def verify(self, signed_attestation: bytes, trust_anchor: Optional[TrustAnchor] = None) -> AttestationClaims:
        anchor = trust_anchor or self.trust_anchor
        if anchor is None:
            raise AuthnError(
                code=PDP_E_TRUST_ANCHOR_MISSING,
                message="No trust anchor configured; cannot verify attestation",
            )

        der = _to_der(signed_attestation)
        try:
            content_info = _decode(der, rfc5652.ContentInfo())
            if content_info["contentType"] != rfc5652.id_signedData:
                raise ValueError("not a SignedData structure")
            signed_data = _decode(content_info["content"].asOctets(), rfc5652.SignedData())
            encap = signed_data["encapContentInfo"]
            if not encap["eContent"].isValue:
                raise ValueError("detached signatures are not supported")
            content = encap["eContent"].asOctets()
            content_type = encap["eContentType"]
            signer_infos = list(signed_data["signerInfos"])
        except (PyAsn1Error, ValueError, TypeError, KeyError) as e:
            raise AuthnError(
                code=PDP_E_ATTESTATION_MALFORMED,
                message="Attestation is not a well-formed PKCS7 signed document",
                details={"error": str(e)},
            ) from e

        if not signer_infos:
            raise AuthnError(code=PDP_E_ATTESTATION_MALFORMED, message="Attestation carries no signatures")

        untrusted = 0
        for signer_info in signer_infos:
            cert = _find_signer_certificate(signer_info["sid"], anchor)
            if cert is None:
                untrusted += 1
                continue
            self._verify_signer(signer_info, cert, content, content_type)
            return self._claims(content)

        raise AuthnError(
            code=PDP_E_ATTESTATION_UNTRUSTED_SIGNER,
            message="Attestation was not signed by a trusted certificate",
            details={"signers": untrusted},
        )

    @staticmethod
    def _verify_signer(signer_info: Any, cert: x509.Certificate, content: bytes, content_type: Any) -> None:
        try:
            digest_oid = str(signer_info["digestAlgorithm"]["algorithm"])
            if digest_oid not in _DIGESTS:
                raise UnsupportedAlgorithm(f"unsupported digest algorithm {digest_oid}")
            if str(signer_info["signatureAlgorithm"]["algorithm"]) == _RSASSA_PSS:
                raise UnsupportedAlgorithm("RSASSA-PSS signatures are not supported")
            hash_cls, hashlib_name = _DIGESTS[digest_oid]

            signed_attrs = signer_info["signedAttrs"]
            if signed_attrs.isValue:
                digest = _attribute(signed_attrs, rfc5652.id_messageDigest, rfc5652.MessageDigest())
                if digest is None or digest.asOctets() != hashlib.new(hashlib_name, content).digest():
                    raise InvalidSignature("messageDigest does not match content")
                declared_type = _attribute(signed_attrs, rfc5652.id_contentType, rfc5652.ContentType())
                if declared_type is not None and declared_type != content_type:
                    raise InvalidSignature("contentType attribute does not match content")
                # The signature covers the attributes re-tagged as a universal SET OF.
                as_set = rfc5652.SignedAttributes()
                for idx, attr in enumerate(signed_attrs):
                    as_set[idx] = attr
                message = der_encoder.encode(as_set)
            else:
                message = content

            _verify_signature(cert, signer_info["signature"].asOctets(), message, hash_cls())
        except (InvalidSignature, UnsupportedAlgorithm, PyAsn1Error, ValueError) as e:
            raise AuthnError(
                code=PDP_E_ATTESTATION_SIGNATURE,
                message="Could not verify attestation signature",
                details={"error": str(e) or type(e).__name__},
            ) from e

    @staticmethod
    def _claims(content: bytes) -> AttestationClaims:
        try:
            document = json.loads(content.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise AuthnError(
                code=PDP_E_ATTESTATION_CLAIMS,
                message="Attestation payload is not JSON",
            ) from e
        return AttestationClaims.from_document(document)
