"""Gateway configuration.

All settings have defaults and can be overridden from the environment:

  PDP_HOSTNAME                          host serving decisions (default http://localhost)
  PDP_PORT                              port serving decisions (default 8181)
  PDP_POLICY_PATH                       package/rule path of the policy (default /authz/allow)
  PDP_READ_TIMEOUT_MS                   read timeout for decision calls (default 5000)
  PDP_CONNECTION_TIMEOUT_MS             connect timeout for decision calls (default 5000)
  PDP_RETRY_MAX_ATTEMPTS                retries after a transport failure (default 2)
  PDP_RETRY_BACKOFF_MS                  initial retry delay, doubles per retry (default 250)
  PDP_ATTESTATION_HEADER                header carrying the signed instance identity
  PDP_REQUIRE_ATTESTATION               reject requests without the header (default off)
  PDP_TRUST_ANCHOR_FILE                 PEM certificate(s) that sign instance identities
  PDP_IMDS_ENDPOINT                     instance metadata service base URL
  PDP_CREDENTIAL_REFRESH_MARGIN_SECONDS refresh credentials this long before expiry
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional, Union

logger = logging.getLogger("pdp_gateway")

DEFAULT_ATTESTATION_HEADER = "Aws-Signed-Metadata"
DEFAULT_IMDS_ENDPOINT = "http://169.254.169.254"


def endpoint(hostname: str, port: Union[int, str], policy_path: str) -> str:
    """Construct the endpoint to which decision requests are sent.

    >>> endpoint("localhost", 8181, "authz/allow")
    'http://localhost:8181/v1/data/authz/allow'
    >>> endpoint("http://localhost/", ":8181", "/authz/allow")
    'http://localhost:8181/v1/data/authz/allow'
    """
    host = str(hostname).strip()
    if "://" not in host:
        host = "http://" + host
    host = host.rstrip("/")

    port_s = str(port).strip()
    if not port_s.startswith(":"):
        port_s = ":" + port_s

    path = "/" + str(policy_path).strip().strip("/")

    return host + port_s + "/v1/data" + path


def _env_bool(name: str, default: bool) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name, "") or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Invalid %s=%r; using default %s", name, raw, default)
        return default
    if value < 0:
        logger.warning("Negative %s=%r; using 0", name, raw)
        return 0
    return value


@dataclass(frozen=True)
class GatewayConfig:
    hostname: str = "http://localhost"
    port: Union[int, str] = 8181
    policy_path: str = "/authz/allow"
    read_timeout_ms: int = 5000
    connection_timeout_ms: int = 5000
    retry_max_attempts: int = 2
    retry_backoff_ms: int = 250
    attestation_header: str = DEFAULT_ATTESTATION_HEADER
    require_attestation: bool = False
    trust_anchor_file: Optional[str] = None
    imds_endpoint: str = DEFAULT_IMDS_ENDPOINT
    credential_refresh_margin_s: int = 300

    @property
    def pdp_endpoint(self) -> str:
        return endpoint(self.hostname, self.port, self.policy_path)

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        d = cls()
        return cls(
            hostname=(os.getenv("PDP_HOSTNAME", "") or "").strip() or d.hostname,
            port=_env_int("PDP_PORT", int(d.port)),
            policy_path=(os.getenv("PDP_POLICY_PATH", "") or "").strip() or d.policy_path,
            read_timeout_ms=_env_int("PDP_READ_TIMEOUT_MS", d.read_timeout_ms),
            connection_timeout_ms=_env_int("PDP_CONNECTION_TIMEOUT_MS", d.connection_timeout_ms),
            retry_max_attempts=_env_int("PDP_RETRY_MAX_ATTEMPTS", d.retry_max_attempts),
            retry_backoff_ms=_env_int("PDP_RETRY_BACKOFF_MS", d.retry_backoff_ms),
            attestation_header=(os.getenv("PDP_ATTESTATION_HEADER", "") or "").strip() or d.attestation_header,
            require_attestation=_env_bool("PDP_REQUIRE_ATTESTATION", d.require_attestation),
            trust_anchor_file=(os.getenv("PDP_TRUST_ANCHOR_FILE", "") or "").strip() or None,
            imds_endpoint=(os.getenv("PDP_IMDS_ENDPOINT", "") or "").strip() or d.imds_endpoint,
            credential_refresh_margin_s=_env_int(
                "PDP_CREDENTIAL_REFRESH_MARGIN_SECONDS", d.credential_refresh_margin_s
            ),
        )
