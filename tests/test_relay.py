"""Tests for the bidirectional relay."""

import asyncio
import contextlib
import socket
import struct

import pytest

from httpxy.errors import RelayIOError
from httpxy.relay import CLIENT_TO_TARGET, TARGET_TO_CLIENT, relay
from tests.conftest import connection_pair, tcp_connection_pair


@pytest.mark.asyncio
async def test_relays_both_directions_until_client_closes():
    client, (client_app_r, client_app_w) = await connection_pair()
    target, (target_app_r, target_app_w) = await connection_pair()

    task = asyncio.create_task(relay(client, target, chunk_size=4))

    client_app_w.write(b"ping from client")
    await client_app_w.drain()
    assert await target_app_r.readexactly(16) == b"ping from client"

    target_app_w.write(b"pong")
    await target_app_w.drain()
    assert await client_app_r.readexactly(4) == b"pong"

    client_app_w.close()
    result = await asyncio.wait_for(task, timeout=2.0)

    assert result.ended_by == CLIENT_TO_TARGET
    assert result.error is None
    assert result.client_to_target == 16
    assert result.target_to_client == 4
    assert client.closed and target.closed
    assert await asyncio.wait_for(target_app_r.read(), timeout=2.0) == b""
    target_app_w.close()


@pytest.mark.asyncio
async def test_target_close_tears_down_client():
    client, (client_app_r, client_app_w) = await connection_pair()
    target, (target_app_r, target_app_w) = await connection_pair()

    task = asyncio.create_task(relay(client, target))

    target_app_w.write(b"HTTP/1.1 200 OK\r\n\r\n" + b"x" * 100_000)
    await target_app_w.drain()
    target_app_w.close()

    received = await asyncio.wait_for(client_app_r.read(), timeout=2.0)
    assert received.startswith(b"HTTP/1.1 200 OK")
    assert len(received) == 19 + 100_000

    result = await asyncio.wait_for(task, timeout=2.0)
    assert result.ended_by == TARGET_TO_CLIENT
    assert result.target_to_client == len(received)
    client_app_w.close()


@pytest.mark.asyncio
async def test_cancellation_propagates():
    client, (_, client_app_w) = await connection_pair()
    target, (_, target_app_w) = await connection_pair()

    task = asyncio.create_task(relay(client, target))
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    client_app_w.close()
    target_app_w.close()


class StubTarget:
    """Target side whose reads never complete.

    Writes fail with *write_error* when given.  Once its read is cancelled
    it keeps running for *linger* seconds before letting the cancellation
    through.
    """

    def __init__(self, write_error: OSError | None = None, linger: float = 0.0):
        self.write_error = write_error
        self.linger = linger
        self.bytes_out = 0
        self.closed = False
        self.read_cancelled = asyncio.Event()

    async def read(self, n: int) -> bytes:
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.read_cancelled.set()
            await asyncio.sleep(self.linger)
            raise
        return b""

    async def write(self, data: bytes) -> None:
        if self.write_error is not None:
            raise self.write_error
        self.bytes_out += len(data)

    async def close(self, force: bool = False) -> None:
        self.closed = True


@pytest.mark.asyncio
async def test_target_reset_mid_stream_reports_relay_error():
    client, (client_app_r, client_app_w) = await connection_pair()
    target, (target_app_r, target_app_w) = await tcp_connection_pair()

    task = asyncio.create_task(relay(client, target))

    client_app_w.write(b"hello")
    await client_app_w.drain()
    assert await target_app_r.readexactly(5) == b"hello"

    # linger 0 turns the close into a RST
    target_app_w.get_extra_info("socket").setsockopt(
        socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0)
    )
    target_app_w.transport.abort()

    async def keep_writing():
        with contextlib.suppress(ConnectionError):
            while not task.done():
                client_app_w.write(b"x" * 1024)
                await client_app_w.drain()
                await asyncio.sleep(0.01)

    writer_task = asyncio.create_task(keep_writing())
    result = await asyncio.wait_for(task, timeout=2.0)
    await writer_task

    assert isinstance(result.error, RelayIOError)
    assert result.ended_by in (CLIENT_TO_TARGET, TARGET_TO_CLIENT)
    assert client.closed and target.closed
    client_app_w.close()


@pytest.mark.asyncio
async def test_failed_write_to_target_names_that_direction():
    client, (_, client_app_w) = await connection_pair()
    target = StubTarget(write_error=ConnectionResetError("Connection lost"))

    task = asyncio.create_task(relay(client, target))
    client_app_w.write(b"data")
    await client_app_w.drain()
    result = await asyncio.wait_for(task, timeout=2.0)

    assert result.ended_by == CLIENT_TO_TARGET
    assert isinstance(result.error, RelayIOError)
    assert "client->target write failed" in str(result.error)
    assert result.client_to_target == 0
    assert client.closed and target.closed
    client_app_w.close()


@pytest.mark.asyncio
async def test_cancellation_while_draining_the_other_direction():
    client, (_, client_app_w) = await connection_pair()
    target = StubTarget(linger=5.0)

    task = asyncio.create_task(relay(client, target))
    await asyncio.sleep(0.05)
    client_app_w.close()

    # the client->target copy has ended; the other one is still unwinding
    await asyncio.wait_for(target.read_cancelled.wait(), timeout=2.0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert client.closed and target.closed
