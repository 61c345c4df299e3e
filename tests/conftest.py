"""Shared helpers: loopback upstream servers and stream plumbing."""

from __future__ import annotations

import asyncio
import socket
from typing import Callable

import pytest

from httpxy.config import ProxyConfig
from httpxy.connection import ManagedConnection
from httpxy.request import HEADER_TERMINATOR
from httpxy.server import ProxyServer

OK_RESPONSE = b"HTTP/1.1 200 OK\r\nContent-Length: 2\r\nConnection: close\r\n\r\nok"


def make_reader(*chunks: bytes, eof: bool = True) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    for chunk in chunks:
        reader.feed_data(chunk)
    if eof:
        reader.feed_eof()
    return reader


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


async def connection_pair() -> tuple[ManagedConnection, tuple[asyncio.StreamReader, asyncio.StreamWriter]]:
    """A ManagedConnection and the raw streams of its peer."""
    a, b = socket.socketpair()
    ra, wa = await asyncio.open_connection(sock=a)
    rb, wb = await asyncio.open_connection(sock=b)
    return ManagedConnection(ra, wa), (rb, wb)


async def tcp_connection_pair() -> tuple[ManagedConnection, tuple[asyncio.StreamReader, asyncio.StreamWriter]]:
    """Like :func:`connection_pair` but over loopback TCP, so the peer can reset."""
    with socket.create_server(("127.0.0.1", 0)) as listener:
        a = socket.create_connection(listener.getsockname())
        b, _ = listener.accept()
    ra, wa = await asyncio.open_connection(sock=a)
    rb, wb = await asyncio.open_connection(sock=b)
    return ManagedConnection(ra, wa), (rb, wb)


def free_port() -> int:
    """A loopback port with nothing listening on it."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def ipv6_available() -> bool:
    if not socket.has_ipv6:
        return False
    try:
        with socket.socket(socket.AF_INET6, socket.SOCK_STREAM) as s:
            s.bind(("::1", 0))
        return True
    except OSError:
        return False


class Upstream:
    """Loopback target server that records what it receives.

    The default behaviour reads one header block, answers ``OK_RESPONSE``
    and closes.  With ``echo=True`` it echoes bytes until the peer closes.
    """

    def __init__(self, echo: bool = False, host: str = "127.0.0.1") -> None:
        self.echo = echo
        self.host = host
        self.port = 0
        self.received: list[bytes] = []
        self.connections = 0
        self._server: asyncio.Server | None = None

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.connections += 1
        try:
            if self.echo:
                while data := await reader.read(4096):
                    self.received.append(data)
                    writer.write(data)
                    await writer.drain()
                return
            buf = bytearray()
            while HEADER_TERMINATOR not in buf:
                chunk = await reader.read(4096)
                if not chunk:
                    break
                buf += chunk
            await asyncio.sleep(0.05)
            while True:
                try:
                    async with asyncio.timeout(0.05):
                        chunk = await reader.read(4096)
                except TimeoutError:
                    break
                if not chunk:
                    break
                buf += chunk
            self.received.append(bytes(buf))
            writer.write(OK_RESPONSE)
            await writer.drain()
        except ConnectionError:
            pass
        finally:
            writer.close()

    async def __aenter__(self) -> Upstream:
        self._server = await asyncio.start_server(self._handle, self.host, 0)
        self.port = self._server.sockets[0].getsockname()[1]
        return self

    async def __aexit__(self, *exc: object) -> None:
        assert self._server is not None
        self._server.close()


@pytest.fixture
def proxy_config() -> ProxyConfig:
    return ProxyConfig(
        host="127.0.0.1",
        port=0,
        read_timeout=1.0,
        streaming_read_timeout=2.0,
        connect_timeout=1.0,
    )


@pytest.fixture
async def proxy(proxy_config: ProxyConfig):
    server = ProxyServer(proxy_config)
    await server.start()
    try:
        yield server
    finally:
        await server.stop()


async def exchange(port: int, payload: bytes, timeout: float = 3.0) -> bytes:
    """Send *payload* to the proxy and read until it closes the connection."""
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    try:
        writer.write(payload)
        await writer.drain()
        async with asyncio.timeout(timeout):
            return await reader.read()
    finally:
        writer.close()


