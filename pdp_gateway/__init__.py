"""PDP gateway package.

Enforces decisions from an external, OPA-compatible Policy Decision Point:

- Builds an allow-listed decision input for every inbound request
- Verifies signed instance identity documents against a pinned certificate
- Resolves the caller instance's IAM instance profile
- Forwards the input to the PDP with bounded retry and enforces its verdict

Convenience imports
------------------
These are available as top-level imports and are loaded lazily, so importing
the package does not pull in boto3 or FastAPI:

    from pdp_gateway import AuthorizationGateway, GatewayConfig, install_enforcement
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for dev/test environments."""

    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
        m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
        return m.group(1) if m else None
    except OSError:
        return None


__version__ = _read_version_from_pyproject() or "0.1.0"

__all__ = [
    "__version__",
    "AuthorizationGateway",
    "AuthorizationOutcome",
    "GatewayConfig",
    "DecisionClient",
    "RequestContextBuilder",
    "RequestMeta",
    "InstanceTrustVerifier",
    "TrustAnchor",
    "CredentialRotator",
    "PrivilegeResolver",
    "InstanceMetadataClient",
    "AttestationSigner",
    "build_inter_instance_opener",
    "install_enforcement",
    "GatewayError",
    "AuthnError",
    "AuthzError",
    "DependencyError",
    "TransportError",
    "ProtocolError",
]

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "AuthorizationGateway": ("pdp_gateway.gateway", "AuthorizationGateway"),
    "AuthorizationOutcome": ("pdp_gateway.gateway", "AuthorizationOutcome"),
    "GatewayConfig": ("pdp_gateway.config", "GatewayConfig"),
    "DecisionClient": ("pdp_gateway.decision", "DecisionClient"),
    "RequestContextBuilder": ("pdp_gateway.context", "RequestContextBuilder"),
    "RequestMeta": ("pdp_gateway.context", "RequestMeta"),
    "InstanceTrustVerifier": ("pdp_gateway.attestation", "InstanceTrustVerifier"),
    "TrustAnchor": ("pdp_gateway.attestation", "TrustAnchor"),
    "CredentialRotator": ("pdp_gateway.credentials", "CredentialRotator"),
    "PrivilegeResolver": ("pdp_gateway.privilege", "PrivilegeResolver"),
    "InstanceMetadataClient": ("pdp_gateway.metadata", "InstanceMetadataClient"),
    "AttestationSigner": ("pdp_gateway.egress", "AttestationSigner"),
    "build_inter_instance_opener": ("pdp_gateway.egress", "build_inter_instance_opener"),
    "install_enforcement": ("pdp_gateway.middleware", "install_enforcement"),
    "GatewayError": ("pdp_gateway.errors", "GatewayError"),
    "AuthnError": ("pdp_gateway.errors", "AuthnError"),
    "AuthzError": ("pdp_gateway.errors", "AuthzError"),
    "DependencyError": ("pdp_gateway.errors", "DependencyError"),
    "TransportError": ("pdp_gateway.errors", "TransportError"),
    "ProtocolError": ("pdp_gateway.errors", "ProtocolError"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        value = getattr(import_module(module_name), attr)
        globals()[name] = value
        return value
    raise AttributeError(f"module 'pdp_gateway' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
