"""Attach this instance's signed identity to outgoing requests.

    opener = build_inter_instance_opener(AttestationSigner(InstanceMetadataClient()))
    opener.open("http://10.0.1.20:8080/orders")

The receiving side verifies the header with ``InstanceTrustVerifier``.
"""

from __future__ import annotations

import threading
import urllib.request
from typing import Any, MutableMapping, Optional, Union

from .attestation import encode_attestation_header
from .config import DEFAULT_ATTESTATION_HEADER
from .metadata import InstanceMetadataClient


class AttestationSigner:
    """Sets the attestation header on outgoing requests.

    With ``cache=True`` the encoded header is fetched once per process. The
    signed document is stable for the life of the instance, but fetching it
    fresh every time is always correct.
    """

    def __init__(
        self,
        metadata: InstanceMetadataClient,
        *,
        header: str = DEFAULT_ATTESTATION_HEADER,
        cache: bool = False,
    ):
        self.metadata = metadata
        self.header = header
        self.cache = bool(cache)
        self._lock = threading.Lock()
        self._cached: Optional[str] = None

    def header_value(self) -> str:
        if not self.cache:
            return encode_attestation_header(self.metadata.get_signed_document())
        with self._lock:
            if self._cached is None:
                self._cached = encode_attestation_header(self.metadata.get_signed_document())
            return self._cached

    def attach(
        self, request: Union[urllib.request.Request, MutableMapping[str, Any]]
    ) -> Union[urllib.request.Request, MutableMapping[str, Any]]:
        value = self.header_value()
        if isinstance(request, urllib.request.Request):
            # Not carried over redirects to other hosts.
            request.add_unredirected_header(self.header, value)
        else:
            request[self.header] = value
        return request


class InjectAttestationHandler(urllib.request.BaseHandler):
    """Opener pre-processor that signs every HTTP(S) request."""

    handler_order = 400

    def __init__(self, signer: AttestationSigner):
        self.signer = signer

    def http_request(self, req: urllib.request.Request) -> urllib.request.Request:
        self.signer.attach(req)
        return req

    https_request = http_request


def build_inter_instance_opener(signer: AttestationSigner, *handlers: Any) -> urllib.request.OpenerDirector:
    return urllib.request.build_opener(InjectAttestationHandler(signer), *handlers)
