"""
errors.py — Exception taxonomy and the literal error responses.

Every failure is caught at the pipeline boundary in
:mod:`httpxy.server`; :func:`response_for` decides whether the client
gets one of the fixed diagnostics below or just a closed socket.
"""

from __future__ import annotations

from typing import Optional


def _plain_response(status: str, body: str) -> bytes:
    return (
        f"HTTP/1.1 {status}\r\n"
        "Content-Type: text/plain\r\n"
        "Connection: close\r\n"
        "\r\n"
        f"{body}"
    ).encode("ascii")


BAD_URL_RESPONSE: bytes = _plain_response(
    "400 Bad Request",
    "Invalid proxy URL format. Use: /http://target_host:port/path",
)
BAD_HOST_RESPONSE: bytes = _plain_response("400 Bad Request", "Invalid hostname")
BAD_GATEWAY_RESPONSE: bytes = _plain_response(
    "502 Bad Gateway", "Cannot connect to target server"
)


class ProxyError(Exception):
    """Base class for every error raised inside a pipeline."""


class ConfigError(ProxyError):
    """Invalid configuration; the server refuses to start."""


class IncompleteRequest(ProxyError):
    """The client never delivered a complete header block."""


class ExtractError(ProxyError):
    """The path token does not carry a usable encoded target."""

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message)
        self.path = path


class EmptyHostError(ExtractError):
    """The encoded target parsed but named no host."""


class ConnectError(ProxyError):
    """Resolution failed or no candidate address accepted a connection."""

    def __init__(self, host: str, port: int, reason: str) -> None:
        super().__init__(f"{host}:{port}: {reason}")
        self.host = host
        self.port = port
        self.reason = reason


class RelayIOError(ProxyError):
    """A read or write failed after relaying had started."""


def response_for(exc: BaseException) -> Optional[bytes]:
    """Map a pipeline failure to the bytes sent back, or ``None`` for silence."""
    if isinstance(exc, EmptyHostError):
        return BAD_HOST_RESPONSE
    if isinstance(exc, ExtractError):
        return BAD_URL_RESPONSE
    if isinstance(exc, ConnectError):
        return BAD_GATEWAY_RESPONSE
    return None
