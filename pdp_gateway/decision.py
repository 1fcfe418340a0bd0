"""pdp_gateway.decision

Decision client for an OPA-compatible Policy Decision Point (PDP).

Request body:
    {"input": <decision input>}

Response body:
    {"decision_id": "...", "result": true|false}

Only a JSON ``true`` result is an allow. Anything else in a well-formed 2xx
response (false, missing, "true", 1, an object) is a deny.

Retry semantics:
- transport failures (refused/reset connections, DNS errors, connect or read
  timeouts, truncated responses) are retried with exponential backoff
- a non-2xx response means the PDP is reachable but rejected the call; it is
  surfaced immediately as a ProtocolError and never retried
"""

from __future__ import annotations

import http.client
import json
import logging
import time
import urllib.parse
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, StrictStr, ValidationError

from .errors import (
    PDP_E_INVALID_RESPONSE,
    PDP_E_TRANSPORT,
    PDP_E_UNEXPECTED_STATUS,
    ProtocolError,
    TransportError,
)
from .metrics import observe_pdp_latency, record_pdp_attempt

logger = logging.getLogger("pdp_gateway")

# Failures below the HTTP layer. RemoteDisconnected and IncompleteRead are
# HTTPException subclasses; timeouts and refused connections are OSError.
_TRANSPORT_ERRORS = (OSError, http.client.HTTPException)


class DecisionResponse(BaseModel):
    """Wire shape of a PDP response."""

    model_config = ConfigDict(extra="allow")

    decision_id: Optional[StrictStr] = None
    result: Any = None


@dataclass(frozen=True)
class DecisionVerdict:
    allowed: bool
    decision_id: str
    raw: bytes


@dataclass
class DecisionClient:
    """Stateless PDP client with bounded retry.

    ``retry_max_attempts`` counts retries, so the default of 2 allows three
    attempts in total, separated by ``retry_backoff_ms`` and then twice that.
    """

    connection_timeout_ms: int = 5000
    read_timeout_ms: int = 5000
    retry_max_attempts: int = 2
    retry_backoff_ms: int = 250
    sleep: Callable[[float], None] = time.sleep

    def decide(self, endpoint: str, input_document: Dict[str, Any]) -> DecisionVerdict:
        self._check_endpoint(endpoint)
        body = json.dumps({"input": input_document}, separators=(",", ":")).encode("utf-8")

        start = time.monotonic()
        try:
            status, payload = self._post_with_retry(endpoint, body)
        finally:
            observe_pdp_latency(time.monotonic() - start)

        if not 200 <= status <= 299:
            raise ProtocolError(
                code=PDP_E_UNEXPECTED_STATUS,
                message=f"Unexpected response {status} from decision endpoint {endpoint}",
                details={"endpoint": endpoint, "status": status},
            )
        return self._parse(endpoint, payload)

    def backoff_schedule(self) -> Tuple[float, ...]:
        """Delays (seconds) slept between attempts, in order."""
        base = max(0, int(self.retry_backoff_ms)) / 1000.0
        return tuple(base * (2 ** i) for i in range(max(0, int(self.retry_max_attempts))))

    @staticmethod
    def _check_endpoint(endpoint: str) -> None:
        try:
            parts = urllib.parse.urlsplit(endpoint)
            port = parts.port
        except ValueError as e:
            raise TransportError(
                code=PDP_E_TRANSPORT,
                message=f"Decision endpoint {endpoint!r} is not a valid URL",
                retryable=False,
                details={"endpoint": endpoint, "error": str(e)},
            ) from e
        if parts.scheme not in ("http", "https") or not parts.hostname:
            raise TransportError(
                code=PDP_E_TRANSPORT,
                message=f"Decision endpoint {endpoint!r} is not a valid URL",
                retryable=False,
                details={"endpoint": endpoint, "port": port},
            )

    def _post_with_retry(self, endpoint: str, body: bytes) -> Tuple[int, bytes]:
        delays = self.backoff_schedule()
        total = len(delays) + 1

        for attempt in range(1, total + 1):
            try:
                status, payload = self._post(endpoint, body)
            except _TRANSPORT_ERRORS as e:
                record_pdp_attempt("transport_error")
                if attempt < total:
                    delay = delays[attempt - 1]
                    logger.warning(
                        "Decision endpoint %s unreachable (attempt %d/%d): %s; retrying in %.3fs",
                        endpoint, attempt, total, e, delay,
                    )
                    self.sleep(delay)
                    continue
                raise TransportError(
                    code=PDP_E_TRANSPORT,
                    message=f"Decision endpoint {endpoint} unreachable after {attempt} attempts",
                    details={"endpoint": endpoint, "attempts": attempt, "error": f"{type(e).__name__}: {e}"},
                ) from e

            record_pdp_attempt("ok" if 200 <= status <= 299 else "http_error")
            return status, payload

        # range() is never empty; keeps type checkers satisfied.
        raise AssertionError("unreachable")

    def _post(self, endpoint: str, body: bytes) -> Tuple[int, bytes]:
        parts = urllib.parse.urlsplit(endpoint)
        conn_cls = http.client.HTTPSConnection if parts.scheme == "https" else http.client.HTTPConnection
        conn = conn_cls(parts.hostname, parts.port, timeout=self.connection_timeout_ms / 1000.0)
        path = parts.path or "/"
        if parts.query:
            path += "?" + parts.query
        try:
            # Connect under the connection timeout, then switch the socket to
            # the read timeout for the request/response exchange.
            conn.connect()
            conn.sock.settimeout(self.read_timeout_ms / 1000.0)
            conn.request(
                "POST",
                path,
                body=body,
                headers={"Content-Type": "application/json", "Accept": "application/json"},
            )
            resp = conn.getresponse()
            return resp.status, resp.read()
        finally:
            conn.close()

    @staticmethod
    def _parse(endpoint: str, payload: bytes) -> DecisionVerdict:
        try:
            decoded = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise ProtocolError(
                code=PDP_E_INVALID_RESPONSE,
                message=f"Decision endpoint {endpoint} returned a non-JSON body",
                details={"endpoint": endpoint, "error": str(e)},
            ) from e

        if not isinstance(decoded, dict):
            raise ProtocolError(
                code=PDP_E_INVALID_RESPONSE,
                message=f"Decision endpoint {endpoint} returned {type(decoded).__name__}, expected an object",
                details={"endpoint": endpoint},
            )

        try:
            resp = DecisionResponse.model_validate(decoded)
        except ValidationError as e:
            raise ProtocolError(
                code=PDP_E_INVALID_RESPONSE,
                message=f"Decision endpoint {endpoint} returned an invalid verdict",
                details={"endpoint": endpoint, "errors": e.errors(include_url=False, include_context=False)},
            ) from e

        return DecisionVerdict(allowed=resp.result is True, decision_id=resp.decision_id or "", raw=payload)
