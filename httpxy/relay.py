"""
relay.py — Full-duplex byte pipe between client and target.

Two copy tasks run side by side, one per direction.  Each readiness
event moves at most one ``chunk_size`` read before yielding, so a busy
direction cannot starve the other.  Whichever task finishes first (EOF,
read error, or write error) ends the relay; the other is cancelled and
both connections are closed together.  There is no half-close.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from httpxy.connection import ManagedConnection
from httpxy.errors import RelayIOError

logger = logging.getLogger(__name__)


@dataclass
class RelayResult:
    client_to_target: int = 0
    target_to_client: int = 0
    ended_by: str = ""      # direction whose copy finished first
    error: Optional[RelayIOError] = None


CLIENT_TO_TARGET = "client->target"
TARGET_TO_CLIENT = "target->client"


async def pipe(
    src: ManagedConnection, dst: ManagedConnection, chunk_size: int, label: str
) -> None:
    """Copy *src* into *dst* until EOF.

    Raises :class:`RelayIOError` on a failed read or write.
    """
    while True:
        try:
            data = await src.read(chunk_size)
        except OSError as e:
            raise RelayIOError(f"{label} read failed: {e}") from e
        if not data:
            return
        try:
            await dst.write(data)
        except OSError as e:
            raise RelayIOError(f"{label} write failed: {e}") from e
        logger.trace("%s: %d bytes", label, len(data))


async def relay(
    client: ManagedConnection, target: ManagedConnection, chunk_size: int = 8192
) -> RelayResult:
    """Relay until either direction ends, then close both connections."""
    result = RelayResult()
    sent_up, sent_down = target.bytes_out, client.bytes_out

    up = asyncio.create_task(pipe(client, target, chunk_size, CLIENT_TO_TARGET))
    down = asyncio.create_task(pipe(target, client, chunk_size, TARGET_TO_CLIENT))
    try:
        done, pending = await asyncio.wait(
            [up, down], return_when=asyncio.FIRST_COMPLETED
        )
        for t in pending:
            t.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        for t, direction in ((up, CLIENT_TO_TARGET), (down, TARGET_TO_CLIENT)):
            if t not in done:
                continue
            exc = t.exception()
            if isinstance(exc, RelayIOError):
                if result.error is None:
                    result.error = exc
                    result.ended_by = direction
            elif exc is not None:
                raise exc
            elif not result.ended_by:
                result.ended_by = direction
    except asyncio.CancelledError:
        up.cancel()
        down.cancel()
        raise
    finally:
        await asyncio.gather(client.close(), target.close(), return_exceptions=True)

    result.client_to_target = target.bytes_out - sent_up
    result.target_to_client = client.bytes_out - sent_down
    return result
