"""
connection.py — Stream pair wrapper with a safe, idempotent close.
"""

from __future__ import annotations

import asyncio
import logging
import socket
import time
from asyncio import StreamReader, StreamWriter
from typing import Any, Optional

logger = logging.getLogger(__name__)


class ManagedConnection:
    """Thin wrapper around an ``(StreamReader, StreamWriter)`` pair.

    Tracks last-activity time and byte counters, and provides a
    ``close()`` that may be called any number of times from any exit
    path.
    """

    __slots__ = ("reader", "writer", "last_activity", "bytes_in", "bytes_out", "_closed")

    def __init__(self, reader: StreamReader, writer: StreamWriter):
        self.reader = reader
        self.writer = writer
        self.last_activity = time.monotonic()
        self.bytes_in = 0
        self.bytes_out = 0
        self._closed = False

    def touch(self) -> None:
        """Update the last-activity timestamp (call on every successful I/O)."""
        self.last_activity = time.monotonic()

    def get_extra_info(self, name: str, default: Any = None) -> Any:
        return self.writer.get_extra_info(name, default)

    @property
    def peername(self) -> Optional[tuple]:
        return self.get_extra_info("peername")

    @property
    def family(self) -> Optional[socket.AddressFamily]:
        sock = self.get_extra_info("socket")
        return sock.family if sock is not None else None

    async def read(self, n: int) -> bytes:
        data = await self.reader.read(n)
        if data:
            self.bytes_in += len(data)
            self.touch()
        return data

    async def write(self, data: bytes) -> None:
        self.writer.write(data)
        await self.writer.drain()
        self.bytes_out += len(data)
        self.touch()

    async def send_best_effort(self, data: bytes) -> bool:
        """Write *data* and drain; report failure instead of raising."""
        if self.closed:
            return False
        try:
            async with asyncio.timeout(2.0):
                await self.write(data)
            return True
        except (OSError, TimeoutError) as e:
            logger.debug("Could not send %d bytes: %s", len(data), e)
            return False

    async def close(self, force: bool = False) -> None:
        """Close the underlying transport.

        With *force* the transport is aborted immediately, which is what
        bulk teardown wants when the peer may already be gone.  Otherwise
        the writer is closed gracefully and aborted if that stalls.
        """
        if self._closed:
            return
        self._closed = True
        try:
            transport = self.writer.transport
            if force:
                transport.abort()
            if transport is None or transport.is_closing():
                return
            self.writer.close()
            await asyncio.wait_for(self.writer.wait_closed(), timeout=2.0)
        except TimeoutError:
            transport = self.writer.transport
            if transport and not transport.is_closing():
                transport.abort()
            logger.trace("Connection close timed out, aborted")
        except OSError as e:
            logger.debug("Connection close error: %s", e)

    @property
    def closed(self) -> bool:
        return self._closed or self.writer.is_closing()

    def __repr__(self) -> str:
        return f"<ManagedConnection {self.peername} {'closed' if self.closed else 'open'}>"
