"""
request.py — Read one complete request off an accepted connection.

The reader buffers until the blank line ending the header block, then
(for ordinary HTTP methods) keeps reading until ``Content-Length`` body
bytes have arrived.  Streaming-control (RTSP) requests are complete as
soon as their headers end and get a longer deadline, since players are
slow to negotiate the control channel.
"""

from __future__ import annotations

import asyncio
import logging
import re
from asyncio import StreamReader
from dataclasses import dataclass
from typing import Optional

from httpxy.config import DEFAULT_CONFIG, ProxyConfig
from httpxy.errors import IncompleteRequest

logger = logging.getLogger(__name__)

HEADER_TERMINATOR = b"\r\n\r\n"

STREAMING_CONTROL_METHODS: frozenset[str] = frozenset({
    "DESCRIBE",
    "SETUP",
    "PLAY",
    "PAUSE",
    "TEARDOWN",
    "OPTIONS",
    "GET_PARAMETER",
    "SET_PARAMETER",
})

_METHOD_RE = re.compile(rb"([^ \t\r\n]+)[ \t\r\n]")
_ATOI_RE = re.compile(r"\s*([+-]?\d+)")


def is_streaming_control(method: Optional[str]) -> bool:
    """Exact, case-sensitive match against the streaming-control verbs."""
    return method in STREAMING_CONTROL_METHODS


def _atoi(value: str) -> int:
    m = _ATOI_RE.match(value)
    return int(m.group(1)) if m else 0


@dataclass(frozen=True)
class IncomingRequest:
    """A fully read client request.

    ``headers`` keeps the raw header lines (without CRLF) in the order
    the client sent them.  ``raw`` is every byte received, which is what
    passthrough mode forwards.
    """

    method: str
    path: Optional[str]
    version: Optional[str]
    headers: tuple[str, ...]
    body: bytes
    raw: bytes
    streaming: bool = False

    @classmethod
    def parse(cls, data: bytes) -> IncomingRequest:
        """Split *data* (which must contain the header terminator) into parts."""
        end = data.find(HEADER_TERMINATOR)
        if end == -1:
            raise IncompleteRequest("header terminator not found")
        head = data[:end].decode("latin-1")
        lines = head.split("\r\n")
        tokens = lines[0].split()
        method = tokens[0] if tokens else ""
        return cls(
            method=method,
            path=tokens[1] if len(tokens) > 1 else None,
            version=tokens[2] if len(tokens) > 2 else None,
            headers=tuple(line for line in lines[1:] if line),
            body=bytes(data[end + len(HEADER_TERMINATOR):]),
            raw=bytes(data),
            streaming=is_streaming_control(method),
        )

    def header(self, name: str) -> Optional[str]:
        """Value of the first header named *name* (case-insensitive)."""
        wanted = name.lower()
        for line in self.headers:
            key, sep, value = line.partition(":")
            if sep and key.strip().lower() == wanted:
                return value.strip()
        return None

    @property
    def content_length(self) -> int:
        value = self.header("Content-Length")
        if value is None:
            return 0
        return max(_atoi(value), 0)


async def read_request(
    reader: StreamReader, config: ProxyConfig = DEFAULT_CONFIG
) -> IncomingRequest:
    """Read a request from *reader*.

    Raises :class:`IncompleteRequest` if the header block does not
    arrive before the deadline, the peer closes first, or the header
    buffer would exceed ``config.max_header_size``.  A body cut short by
    EOF or by the deadline is returned as-is.
    """
    loop = asyncio.get_running_loop()
    started = loop.time()
    buf = bytearray()
    streaming = False

    try:
        async with asyncio.timeout(config.read_timeout) as deadline:
            scan_from = 0
            while True:
                end = buf.find(HEADER_TERMINATOR, scan_from)
                if end != -1:
                    break
                scan_from = max(len(buf) - len(HEADER_TERMINATOR) + 1, 0)
                room = config.max_header_size - len(buf)
                if room <= 0:
                    raise IncompleteRequest(
                        f"header block exceeds {config.max_header_size} bytes"
                    )
                chunk = await reader.read(room)
                if not chunk:
                    raise IncompleteRequest("client closed before headers completed")
                buf += chunk

                if not streaming:
                    m = _METHOD_RE.match(buf)
                    if m and is_streaming_control(m.group(1).decode("latin-1")):
                        streaming = True
                        deadline.reschedule(started + config.streaming_read_timeout)
                        logger.trace(
                            "Streaming-control method, read deadline now %.0fs",
                            config.streaming_read_timeout,
                        )
    except TimeoutError as e:
        raise IncompleteRequest(
            f"no complete header block after {len(buf)} bytes"
        ) from e

    request = IncomingRequest.parse(buf)
    if request.streaming:
        return request

    length = request.content_length
    if len(request.body) >= length:
        return request

    body = bytearray(request.body)
    try:
        async with asyncio.timeout_at(started + config.read_timeout):
            while len(body) < length:
                chunk = await reader.read(length - len(body))
                if not chunk:
                    break
                body += chunk
    except TimeoutError:
        pass
    if len(body) < length:
        logger.debug("Short body: %d of %d bytes, forwarding anyway", len(body), length)

    return IncomingRequest.parse(bytes(buf) + bytes(body[len(request.body):]))
