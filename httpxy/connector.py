"""
connector.py — Resolve a target host and connect to the first reachable address.

Resolution is family-agnostic (``AF_UNSPEC``), so an IPv6 client can
reach an IPv4-only target and vice versa.  Candidates are tried in the
order the resolver returns them, each under ``connect_timeout``; the
first successful connect wins.  Nothing is raced or retried.
"""

from __future__ import annotations

import asyncio
import logging
import socket
from dataclasses import dataclass

from httpxy.config import DEFAULT_CONFIG, ProxyConfig
from httpxy.connection import ManagedConnection
from httpxy.errors import ConnectError

logger = logging.getLogger(__name__)


@dataclass
class OutboundConnection:
    """A live connection to the target plus the address actually used."""

    conn: ManagedConnection
    family: socket.AddressFamily
    address: tuple

    @property
    def family_name(self) -> str:
        return "IPv6" if self.family == socket.AF_INET6 else "IPv4"

    async def close(self, force: bool = False) -> None:
        await self.conn.close(force=force)


async def resolve(host: str, port: int) -> list[tuple]:
    """Return ``getaddrinfo`` results for *host*, IPv4 and IPv6 alike."""
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(
            host, port, family=socket.AF_UNSPEC, type=socket.SOCK_STREAM
        )
    except (socket.gaierror, UnicodeError) as e:
        raise ConnectError(host, port, f"cannot resolve: {e}") from e
    if not infos:
        raise ConnectError(host, port, "no addresses")
    return infos


async def _connect_one(
    family: int, proto: int, address: tuple, timeout: float
) -> socket.socket:
    loop = asyncio.get_running_loop()
    sock = socket.socket(family, socket.SOCK_STREAM, proto)
    try:
        sock.setblocking(False)
        async with asyncio.timeout(timeout):
            await loop.sock_connect(sock, address)
    except BaseException:
        sock.close()
        raise
    return sock


async def connect_to_target(
    host: str, port: int, config: ProxyConfig = DEFAULT_CONFIG
) -> OutboundConnection:
    """Open a TCP connection to *host*:*port*.

    Raises :class:`ConnectError` when resolution fails or every
    candidate address refuses, errors, or times out.
    """
    infos = await resolve(host, port)
    errors: list[str] = []

    for family, _type, proto, _canon, address in infos:
        try:
            sock = await _connect_one(family, proto, address, config.connect_timeout)
        except TimeoutError:
            logger.debug("Connect to %s timed out", address)
            errors.append(f"{address[0]}: timed out")
            continue
        except OSError as e:
            logger.debug("Connect to %s failed: %s", address, e)
            errors.append(f"{address[0]}: {e.strerror or e}")
            continue

        reader, writer = await asyncio.open_connection(sock=sock)
        out = OutboundConnection(ManagedConnection(reader, writer), family, address)
        logger.info("Connected to %s %s port %d", out.family_name, address[0], port)
        return out

    raise ConnectError(host, port, "; ".join(errors) or "no candidate connected")
