"""Decision input construction.

The decision input is the only document that leaves the gateway for the PDP,
so it is built from an explicit allow-list:

* headers are first normalized to one canonical, CGI-style form
  (``Content-Type`` -> ``CONTENT_TYPE``, ``Accept`` -> ``HTTP_ACCEPT``,
  ``X-Custom-Header`` -> ``HTTP_X_CUSTOM_HEADER``), whatever shape the
  framework handed us (WSGI environ, ASGI byte pairs, plain mapping);
* only canonical keys starting with ``HTTP``, ``CONTENT`` or ``AUTHORIZATION``
  are kept, which drops server/environment entries such as ``SERVER_NAME``,
  ``REMOTE_ADDR`` or ``wsgi.input``;
* query strings become an ordered multimap so repeated keys are not lost.

Nothing in this module performs I/O.
"""

from __future__ import annotations

import urllib.parse
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

HEADER_PREFIXES: Tuple[str, ...] = ("HTTP", "CONTENT", "AUTHORIZATION")

# Headers that CGI/WSGI/Rack expose without the HTTP_ prefix.
_UNPREFIXED_HEADERS = frozenset({"CONTENT_TYPE", "CONTENT_LENGTH"})

RawHeaders = Union[Mapping[Any, Any], Iterable[Tuple[Any, Any]]]


def _text(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("latin-1")
    return str(value)


def canonical_header_key(name: str) -> str:
    """Canonical key for a header *name* as sent on the wire."""
    key = name.strip().upper().replace("-", "_")
    if key in _UNPREFIXED_HEADERS:
        return key
    return "HTTP_" + key


def normalize_headers(raw: RawHeaders) -> Dict[str, str]:
    """Normalize wire header names to canonical keys.

    Accepts a mapping or an iterable of ``(name, value)`` pairs; names and
    values may be ``str`` or ``bytes``. Repeated headers are joined with
    ``", "``.
    """
    pairs = raw.items() if isinstance(raw, Mapping) else raw
    out: Dict[str, str] = {}
    for name, value in pairs:
        key = canonical_header_key(_text(name))
        text = _text(value)
        if key in out:
            out[key] = out[key] + ", " + text
        else:
            out[key] = text
    return out


def headers_from_environ(environ: Mapping[str, Any]) -> Dict[str, str]:
    """Canonical headers from a WSGI/CGI environ (keys are already encoded)."""
    return {
        str(k).upper(): v
        for k, v in environ.items()
        if isinstance(v, str)
    }


def filter_headers(headers: Mapping[str, str], prefixes: Tuple[str, ...] = HEADER_PREFIXES) -> Dict[str, str]:
    """Keep only string-valued entries whose canonical key has an allowed prefix."""
    return {
        k: v
        for k, v in headers.items()
        if isinstance(v, str) and k.upper().startswith(prefixes)
    }


def parse_query(query_string: Union[str, bytes]) -> Dict[str, List[str]]:
    """Parse a query string into an insertion-ordered multimap.

    >>> parse_query("id=42&tag=a&tag=b&empty=")
    {'id': ['42'], 'tag': ['a', 'b'], 'empty': ['']}
    """
    qs = _text(query_string)
    out: Dict[str, List[str]] = {}
    for k, v in urllib.parse.parse_qsl(qs, keep_blank_values=True):
        out.setdefault(k, []).append(v)
    return out


@dataclass(frozen=True)
class Address:
    ip_address: str
    port: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"ipAddress": self.ip_address, "port": self.port}


@dataclass(frozen=True)
class RequestMeta:
    """Framework-neutral view of an inbound request.

    ``headers`` holds canonical keys (see ``normalize_headers``); it may still
    contain non-header environment entries, which the builder drops.
    """

    scheme: str
    method: str
    path: str
    query_string: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)
    source: Address = Address("")
    destination: Address = Address("")

    def header(self, name: str) -> Optional[str]:
        """Look up a header by its wire name (``Aws-Signed-Metadata``)."""
        return self.headers.get(canonical_header_key(name))

    @classmethod
    def from_asgi_scope(cls, scope: Mapping[str, Any]) -> "RequestMeta":
        client = scope.get("client") or ("", None)
        server = scope.get("server") or ("", None)
        return cls(
            scheme=str(scope.get("scheme") or "http"),
            method=str(scope.get("method") or "GET").upper(),
            path=str(scope.get("path") or "/"),
            query_string=_text(scope.get("query_string") or b""),
            headers=normalize_headers(scope.get("headers") or []),
            source=Address(str(client[0] or ""), _port(client[1])),
            destination=Address(str(server[0] or ""), _port(server[1])),
        )

    @classmethod
    def from_environ(cls, environ: Mapping[str, Any]) -> "RequestMeta":
        path = (environ.get("SCRIPT_NAME") or "") + (environ.get("PATH_INFO") or "")
        return cls(
            scheme=str(environ.get("wsgi.url_scheme") or "http"),
            method=str(environ.get("REQUEST_METHOD") or "GET").upper(),
            path=path or "/",
            query_string=str(environ.get("QUERY_STRING") or ""),
            headers=headers_from_environ(environ),
            source=Address(str(environ.get("REMOTE_ADDR") or ""), _port(environ.get("REMOTE_PORT"))),
            destination=Address(str(environ.get("SERVER_NAME") or ""), _port(environ.get("SERVER_PORT"))),
        )


def _port(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class CloudContext:
    """Verified caller identity plus its resolved privilege (may be None)."""

    identity: Dict[str, Any]
    privilege: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"identity": self.identity, "privilege": self.privilege}


@dataclass(frozen=True)
class DecisionInput:
    scheme: str
    method: str
    path: str
    query: Dict[str, List[str]]
    headers: Dict[str, str]
    source: Address
    destination: Address
    cloud: Optional[CloudContext] = None

    def to_dict(self) -> Dict[str, Any]:
        doc: Dict[str, Any] = {
            "request": {
                "scheme": self.scheme,
                "method": self.method,
                "path": self.path,
                "query": {k: list(v) for k, v in self.query.items()},
                "headers": dict(self.headers),
            },
            "source": self.source.to_dict(),
            "destination": self.destination.to_dict(),
        }
        if self.cloud is not None:
            doc["cloud"] = self.cloud.to_dict()
        return doc


class RequestContextBuilder:
    """Builds the decision input for one request."""

    def __init__(self, prefixes: Tuple[str, ...] = HEADER_PREFIXES):
        self.prefixes = tuple(p.upper() for p in prefixes)

    def build(
        self,
        request_meta: RequestMeta,
        source: Optional[Address] = None,
        destination: Optional[Address] = None,
        cloud: Optional[CloudContext] = None,
    ) -> DecisionInput:
        headers = filter_headers(request_meta.headers, self.prefixes)
        return DecisionInput(
            scheme=request_meta.scheme,
            method=request_meta.method,
            path=request_meta.path,
            query=parse_query(request_meta.query_string),
            headers=headers,
            source=source if source is not None else request_meta.source,
            destination=destination if destination is not None else request_meta.destination,
            cloud=cloud,
        )
