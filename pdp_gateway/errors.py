"""Stable error taxonomy for the PDP gateway.

Every failure that can abort an authorization step is a ``GatewayError``
carrying:

- a stable ``code`` string suitable for programmatic handling,
- a ``kind`` tag (authn / authz / transport / protocol / dependency),
- ``retryable`` and ``http_status`` hints for the framework adapter,
- structured ``details`` for debugging without parsing messages.

``TransportError`` and ``ProtocolError`` mean the decision endpoint could not be
reached or understood. They subclass ``AuthzError`` so that ``except AuthzError``
still blocks the request, but they keep their own ``kind`` so operators can tell
"the policy denied this" apart from "the system could not decide".
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict


# Authentication (instance attestation)
PDP_E_ATTESTATION_MISSING = "PDP_E_ATTESTATION_MISSING"
PDP_E_ATTESTATION_MALFORMED = "PDP_E_ATTESTATION_MALFORMED"
PDP_E_ATTESTATION_UNTRUSTED_SIGNER = "PDP_E_ATTESTATION_UNTRUSTED_SIGNER"
PDP_E_ATTESTATION_SIGNATURE = "PDP_E_ATTESTATION_SIGNATURE"
PDP_E_ATTESTATION_CLAIMS = "PDP_E_ATTESTATION_CLAIMS"
PDP_E_TRUST_ANCHOR_MISSING = "PDP_E_TRUST_ANCHOR_MISSING"

# Authorization (decision)
PDP_E_DENIED = "PDP_E_DENIED"
PDP_E_TRANSPORT = "PDP_E_TRANSPORT"
PDP_E_UNEXPECTED_STATUS = "PDP_E_UNEXPECTED_STATUS"
PDP_E_INVALID_RESPONSE = "PDP_E_INVALID_RESPONSE"

# Dependencies (metadata service, control plane)
PDP_E_METADATA_UNAVAILABLE = "PDP_E_METADATA_UNAVAILABLE"
PDP_E_CREDENTIALS_INVALID = "PDP_E_CREDENTIALS_INVALID"
PDP_E_PRIVILEGE_LOOKUP = "PDP_E_PRIVILEGE_LOOKUP"


class ErrorKind(str, enum.Enum):
    AUTHN = "authn"
    AUTHZ = "authz"
    TRANSPORT = "transport"
    PROTOCOL = "protocol"
    DEPENDENCY = "dependency"


@dataclass
class GatewayError(Exception):
    """Base gateway exception with stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 500
    details: Dict[str, Any] = field(default_factory=dict)

    kind: ClassVar[ErrorKind]

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "kind": self.kind.value,
            "message": self.message,
            "retryable": bool(self.retryable),
            "http_status": int(self.http_status),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


@dataclass
class AuthnError(GatewayError):
    """The caller's identity could not be cryptographically verified."""

    http_status: int = 401

    kind: ClassVar[ErrorKind] = ErrorKind.AUTHN


@dataclass
class AuthzError(GatewayError):
    """The request was not authorized by the decision endpoint."""

    http_status: int = 403

    kind: ClassVar[ErrorKind] = ErrorKind.AUTHZ


@dataclass
class TransportError(AuthzError):
    """The decision endpoint was unreachable after all retries."""

    retryable: bool = True
    http_status: int = 503

    kind: ClassVar[ErrorKind] = ErrorKind.TRANSPORT


@dataclass
class ProtocolError(AuthzError):
    """The decision endpoint answered, but not with a usable verdict."""

    http_status: int = 502

    kind: ClassVar[ErrorKind] = ErrorKind.PROTOCOL


@dataclass
class DependencyError(GatewayError):
    """A required external lookup (metadata service, control plane) failed."""

    retryable: bool = True
    http_status: int = 503

    kind: ClassVar[ErrorKind] = ErrorKind.DEPENDENCY
