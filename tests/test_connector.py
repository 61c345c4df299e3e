"""Tests for target resolution and connection."""

import asyncio
import socket

import pytest

from httpxy.config import ProxyConfig
from httpxy.connector import connect_to_target, resolve
from httpxy.errors import ConnectError
from tests.conftest import Upstream, free_port


@pytest.mark.asyncio
async def test_connects_ipv4():
    async with Upstream(echo=True) as up:
        out = await connect_to_target("127.0.0.1", up.port)
        try:
            assert out.family == socket.AF_INET
            assert out.family_name == "IPv4"
            assert out.address[1] == up.port
            await out.conn.write(b"abc")
            assert await out.conn.read(3) == b"abc"
        finally:
            await out.close()
        assert out.conn.closed


@pytest.mark.asyncio
async def test_refused_raises_connect_error():
    port = free_port()
    with pytest.raises(ConnectError) as exc:
        await connect_to_target("127.0.0.1", port)
    assert exc.value.host == "127.0.0.1"
    assert exc.value.port == port


@pytest.mark.asyncio
async def test_resolution_failure(monkeypatch):
    loop = asyncio.get_running_loop()

    async def fail(*args, **kwargs):
        raise socket.gaierror(socket.EAI_NONAME, "Name or service not known")

    monkeypatch.setattr(loop, "getaddrinfo", fail)
    with pytest.raises(ConnectError) as exc:
        await resolve("no-such-host.example", 80)
    assert "cannot resolve" in exc.value.reason


@pytest.mark.asyncio
async def test_first_reachable_candidate_wins(monkeypatch):
    loop = asyncio.get_running_loop()
    dead = free_port()
    async with Upstream(echo=True) as up:
        async def candidates(host, port, **kwargs):
            return [
                (socket.AF_INET, socket.SOCK_STREAM, 6, "", ("127.0.0.1", dead)),
                (socket.AF_INET, socket.SOCK_STREAM, 6, "", ("127.0.0.1", up.port)),
            ]

        monkeypatch.setattr(loop, "getaddrinfo", candidates)
        out = await connect_to_target("dual.example", 80)
        try:
            assert out.address == ("127.0.0.1", up.port)
        finally:
            await out.close()


@pytest.mark.asyncio
async def test_each_attempt_is_bounded(monkeypatch):
    loop = asyncio.get_running_loop()

    async def hang(sock, address):
        await asyncio.sleep(10)

    monkeypatch.setattr(loop, "sock_connect", hang)
    config = ProxyConfig(connect_timeout=0.1)
    with pytest.raises(ConnectError) as exc:
        await asyncio.wait_for(connect_to_target("127.0.0.1", 9, config), timeout=2.0)
    assert "timed out" in exc.value.reason
