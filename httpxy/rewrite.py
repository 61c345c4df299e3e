"""
rewrite.py — Build the bytes sent to the target.

Streaming-control requests go out untouched.  Everything else gets a
fresh request line pointing at the remainder path, loses any ``Host``
and ``Proxy-*`` headers, and gains a synthesized ``Host`` plus
``Connection: close``.  If the request cannot be rebuilt, the original
bytes are forwarded instead.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from httpxy.request import IncomingRequest
from httpxy.target import ParsedTarget

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "HTTP/1.1"
STRIPPED_PREFIXES: tuple[str, ...] = ("host:", "proxy-")
CONNECTION_CLOSE = "Connection: close"


class RewriteMode(Enum):
    PASSTHROUGH = "passthrough"      # streaming-control, forwarded verbatim
    REWRITTEN = "rewritten"          # rebuilt request
    RAW_FALLBACK = "raw-fallback"    # rebuild failed, forwarded verbatim


@dataclass(frozen=True)
class RewrittenRequest:
    data: bytes
    mode: RewriteMode


class RewriteError(ValueError):
    pass


def should_strip(line: str) -> bool:
    """Whether a header line is dropped on the way to the target."""
    lowered = line.lower()
    return any(lowered.startswith(p) for p in STRIPPED_PREFIXES)


def host_header(target: ParsedTarget) -> str:
    return f"Host: {target.authority}"


def build_request(request: IncomingRequest, target: ParsedTarget) -> bytes:
    """Reconstruct *request* for *target*; raises :class:`RewriteError`."""
    if not request.method or any(c in request.method for c in " \r\n"):
        raise RewriteError(f"malformed request method {request.method!r}")

    lines = [f"{request.method} {target.path} {PROTOCOL_VERSION}"]
    lines.extend(h for h in request.headers if not should_strip(h))
    lines.append(host_header(target))
    lines.append(CONNECTION_CLOSE)
    try:
        head = ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1")
    except UnicodeEncodeError as e:
        raise RewriteError(str(e)) from e
    return head + request.body


def rewrite_request(request: IncomingRequest, target: ParsedTarget) -> RewrittenRequest:
    """Choose between passthrough and rewrite, degrading to raw on failure."""
    if request.streaming:
        return RewrittenRequest(request.raw, RewriteMode.PASSTHROUGH)
    try:
        return RewrittenRequest(build_request(request, target), RewriteMode.REWRITTEN)
    except RewriteError as e:
        logger.warning("Rewrite failed (%s), forwarding original request", e)
        return RewrittenRequest(request.raw, RewriteMode.RAW_FALLBACK)
