"""pdp_gateway.metadata

Client for the instance metadata service (IMDS).

The service is link-local and never proxied. IMDSv2 session tokens are
requested with ``PUT /latest/api/token`` and cached until shortly before they
expire; if the token endpoint is not available (IMDSv1-only hosts) requests
are sent without a token.

Failures are retried a small number of times with exponential backoff. When
retries are exhausted, or the service answers with a non-2xx status, a
DependencyError is raised.
"""

from __future__ import annotations

import http.client
import json
import logging
import threading
import time
import urllib.error
import urllib.request
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, StrictStr, ValidationError

from .config import DEFAULT_IMDS_ENDPOINT
from .errors import (
    PDP_E_CREDENTIALS_INVALID,
    PDP_E_METADATA_UNAVAILABLE,
    DependencyError,
)

logger = logging.getLogger("pdp_gateway")

TOKEN_PATH = "/latest/api/token"
IDENTITY_DOCUMENT_PATH = "/latest/dynamic/instance-identity/document"
SIGNED_DOCUMENT_PATH = "/latest/dynamic/instance-identity/pkcs7"
IAM_INFO_PATH = "/latest/meta-data/iam/info"
SECURITY_CREDENTIALS_PATH = "/latest/meta-data/iam/security-credentials/"

TOKEN_TTL_HEADER = "X-aws-ec2-metadata-token-ttl-seconds"
TOKEN_HEADER = "X-aws-ec2-metadata-token"


class InstanceIdentityDocument(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    instance_id: StrictStr = Field(alias="instanceId")
    region: StrictStr
    account_id: Optional[StrictStr] = Field(default=None, alias="accountId")


class SecurityCredentialsDocument(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    code: Optional[StrictStr] = Field(default=None, alias="Code")
    access_key_id: StrictStr = Field(alias="AccessKeyId")
    secret_access_key: StrictStr = Field(alias="SecretAccessKey")
    token: Optional[StrictStr] = Field(default=None, alias="Token")
    expiration: Optional[datetime] = Field(default=None, alias="Expiration")


class InstanceMetadataClient:
    """Blocking IMDS client; safe to share between threads."""

    def __init__(
        self,
        endpoint: str = DEFAULT_IMDS_ENDPOINT,
        *,
        timeout_s: float = 1.0,
        max_attempts: int = 3,
        backoff_s: float = 0.1,
        token_ttl_s: int = 21600,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.timeout_s = float(timeout_s)
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_s = float(backoff_s)
        self.token_ttl_s = int(token_ttl_s)
        self.sleep = sleep
        # Never route link-local metadata requests through an HTTP proxy.
        self._opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))
        self._token_lock = threading.Lock()
        self._token: Optional[Tuple[str, float]] = None
        self._tokens_supported = True

    # -- raw access --------------------------------------------------------

    def get(self, path: str) -> bytes:
        """GET ``path`` and return the body; raises DependencyError on failure."""
        url = self.endpoint + "/" + path.lstrip("/")
        last_err: Optional[str] = None

        for attempt in range(1, self.max_attempts + 1):
            headers: Dict[str, str] = {}
            token = self._session_token()
            if token:
                headers[TOKEN_HEADER] = token
            req = urllib.request.Request(url, headers=headers, method="GET")
            try:
                with self._opener.open(req, timeout=self.timeout_s) as resp:
                    return resp.read()
            except urllib.error.HTTPError as e:
                status = int(e.code)
                last_err = f"HTTP {status}"
                if status == 401:
                    # Token expired or revoked server-side; fetch a new one.
                    self._drop_token()
                elif status < 500:
                    raise DependencyError(
                        code=PDP_E_METADATA_UNAVAILABLE,
                        message=f"Metadata service returned {status} for {path}",
                        retryable=False,
                        details={"path": path, "status": status},
                    ) from e
            except (urllib.error.URLError, OSError, http.client.HTTPException) as e:
                last_err = f"{type(e).__name__}: {e}"

            if attempt < self.max_attempts:
                delay = self.backoff_s * (2 ** (attempt - 1))
                logger.debug("Metadata request %s failed (%s); retrying in %.3fs", path, last_err, delay)
                self.sleep(delay)

        raise DependencyError(
            code=PDP_E_METADATA_UNAVAILABLE,
            message=f"Metadata service unavailable for {path}",
            details={"path": path, "attempts": self.max_attempts, "error": last_err},
        )

    def get_text(self, path: str) -> str:
        return self.get(path).decode("utf-8").strip()

    def get_json(self, path: str) -> Any:
        body = self.get(path)
        try:
            return json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise DependencyError(
                code=PDP_E_METADATA_UNAVAILABLE,
                message=f"Metadata service returned non-JSON for {path}",
                retryable=False,
                details={"path": path},
            ) from e

    # -- documents ---------------------------------------------------------

    def get_signed_document(self) -> bytes:
        """Bare base64 PKCS7 body of the signed instance identity document."""
        return self.get(SIGNED_DOCUMENT_PATH).strip()

    def identity_document(self) -> InstanceIdentityDocument:
        data = self.get_json(IDENTITY_DOCUMENT_PATH)
        try:
            return InstanceIdentityDocument.model_validate(data)
        except ValidationError as e:
            raise DependencyError(
                code=PDP_E_METADATA_UNAVAILABLE,
                message="Instance identity document is invalid",
                retryable=False,
                details={"errors": e.errors(include_url=False, include_context=False)},
            ) from e

    def iam_info(self) -> Dict[str, Any]:
        data = self.get_json(IAM_INFO_PATH)
        return data if isinstance(data, dict) else {}

    def role_name(self) -> str:
        """Name of the role whose credentials the instance profile exposes."""
        names = [n.strip() for n in self.get_text(SECURITY_CREDENTIALS_PATH).splitlines() if n.strip()]
        if not names:
            raise DependencyError(
                code=PDP_E_CREDENTIALS_INVALID,
                message="No instance profile role is attached to this instance",
                retryable=False,
            )
        return names[0]

    def security_credentials(self, role_name: Optional[str] = None) -> SecurityCredentialsDocument:
        role = role_name or self.role_name()
        data = self.get_json(SECURITY_CREDENTIALS_PATH + role)
        try:
            doc = SecurityCredentialsDocument.model_validate(data)
        except ValidationError as e:
            raise DependencyError(
                code=PDP_E_CREDENTIALS_INVALID,
                message=f"Security credentials for role {role} are invalid",
                retryable=False,
                details={"role": role, "errors": e.errors(include_url=False, include_context=False)},
            ) from e
        if doc.code is not None and doc.code != "Success":
            raise DependencyError(
                code=PDP_E_CREDENTIALS_INVALID,
                message=f"Metadata service reported {doc.code} for role {role}",
                details={"role": role, "code": doc.code},
            )
        return doc

    # -- IMDSv2 session tokens ----------------------------------------------

    def _session_token(self) -> Optional[str]:
        with self._token_lock:
            if not self._tokens_supported:
                return None
            now = time.monotonic()
            if self._token is not None and now < self._token[1]:
                return self._token[0]

            req = urllib.request.Request(
                self.endpoint + TOKEN_PATH,
                headers={TOKEN_TTL_HEADER: str(self.token_ttl_s)},
                method="PUT",
            )
            try:
                with self._opener.open(req, timeout=self.timeout_s) as resp:
                    token = resp.read().decode("utf-8").strip()
            except urllib.error.HTTPError as e:
                if e.code in (403, 404, 405):
                    logger.info("Metadata service does not issue session tokens (HTTP %s); using IMDSv1", e.code)
                    self._tokens_supported = False
                return None
            except (urllib.error.URLError, OSError, http.client.HTTPException):
                # Let the GET path retry and report.
                return None

            # Renew a minute early so an in-flight request never carries a stale token.
            self._token = (token, now + max(1, self.token_ttl_s - 60))
            return token

    def _drop_token(self) -> None:
        with self._token_lock:
            self._token = None
