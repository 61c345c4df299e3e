"""
target.py — Pull the destination out of an encoded request path.

Clients address the proxy as ``/<scheme>://<authority>[/<path>]``, e.g.
``/http://example.com:9000/foo`` or ``/rtsp://[2001:db8::1]:554/live``.
Parsing is best-effort: a missing or unusable port becomes 80 and a
missing path becomes ``/``.  Each such default is recorded in
:attr:`ParsedTarget.fallbacks` so callers can tell them apart.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from httpxy.errors import EmptyHostError, ExtractError

DEFAULT_PORT = 80
MAX_HOST_LEN = 255


class Scheme(Enum):
    HTTP = "http"
    HTTPS = "https"
    RTSP = "rtsp"

    @property
    def marker(self) -> str:
        return f"/{self.value}://"


class Fallback(Enum):
    """A silent default applied while parsing."""

    DEFAULT_PORT = "default-port"    # no port in the authority
    INVALID_PORT = "invalid-port"    # port present but unusable
    DEFAULT_PATH = "default-path"    # nothing after the authority


@dataclass(frozen=True)
class ParsedTarget:
    scheme: Scheme
    host: str
    port: int = DEFAULT_PORT
    path: str = "/"
    fallbacks: frozenset[Fallback] = field(default_factory=frozenset)

    @property
    def is_ipv6(self) -> bool:
        try:
            return isinstance(ipaddress.ip_address(self.host), ipaddress.IPv6Address)
        except ValueError:
            return ":" in self.host

    @property
    def authority(self) -> str:
        """``host[:port]`` as it belongs in a ``Host`` header."""
        if self.port == DEFAULT_PORT:
            return self.host
        if self.is_ipv6:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"

    def __str__(self) -> str:
        host = f"[{self.host}]" if self.is_ipv6 else self.host
        return f"{self.scheme.value}://{host}:{self.port}{self.path}"


def _parse_port(text: str, fallbacks: set[Fallback]) -> int:
    if text.isdigit() and text.isascii() and 0 < int(text) <= 65535:
        return int(text)
    fallbacks.add(Fallback.INVALID_PORT)
    return DEFAULT_PORT


def _split_authority(authority: str, fallbacks: set[Fallback]) -> tuple[str, int]:
    if authority.startswith("["):
        close = authority.find("]")
        if close == -1:
            raise ExtractError("unterminated IPv6 literal")
        host = authority[1:close]
        if len(host) > MAX_HOST_LEN:
            raise ExtractError("IPv6 literal too long")
        rest = authority[close + 1:]
        if rest.startswith(":"):
            return host, _parse_port(rest[1:], fallbacks)
        fallbacks.add(Fallback.DEFAULT_PORT)
        return host, DEFAULT_PORT

    host, sep, port = authority.rpartition(":")
    if not sep:
        fallbacks.add(Fallback.DEFAULT_PORT)
        return authority, DEFAULT_PORT
    return host, _parse_port(port, fallbacks)


def extract_target(path: Optional[str]) -> ParsedTarget:
    """Parse the encoded destination out of a request path token.

    Raises :class:`ExtractError` for an unsupported scheme marker or a
    malformed authority, and :class:`EmptyHostError` when the authority
    names no host.  Never returns a partially filled target.
    """
    if not path:
        raise ExtractError("missing request path", path)

    for scheme in Scheme:
        if path.startswith(scheme.marker):
            break
    else:
        raise ExtractError("unsupported scheme marker", path)

    stripped = path[len(scheme.marker):]
    fallbacks: set[Fallback] = set()

    authority, slash, remainder = stripped.partition("/")
    if slash:
        remainder = "/" + remainder
    else:
        remainder = "/"
        fallbacks.add(Fallback.DEFAULT_PATH)

    if not authority:
        raise EmptyHostError("empty authority", path)

    try:
        host, port = _split_authority(authority, fallbacks)
    except ExtractError as e:
        e.path = path
        raise
    if not host:
        raise EmptyHostError("empty host", path)
    if len(host) > MAX_HOST_LEN:
        raise ExtractError("host name too long", path)

    return ParsedTarget(
        scheme=scheme,
        host=host,
        port=port,
        path=remainder,
        fallbacks=frozenset(fallbacks),
    )
