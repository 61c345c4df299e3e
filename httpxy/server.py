"""
server.py — Listener and per-connection pipeline.

Architecture
------------
``ProxyServer`` owns the listening socket, the concurrency gate and the
set of live connections.  Every accepted connection runs
``_ProxyHandler.handle_client`` in its own task:

1. take a slot from the gate (waits while the ceiling is reached),
2. read the request,
3. extract the encoded target,
4. connect to it,
5. send the rewritten (or passed-through) request,
6. relay bytes both ways until either side closes.

Failures in steps 2-4 end the pipeline with one of the fixed error
responses from :mod:`httpxy.errors` (or silence for an incomplete
request).  Whatever happens, the ``finally`` blocks close both sockets
and hand the slot back exactly once.
"""

from __future__ import annotations

import asyncio
import logging
import socket
import traceback
from asyncio import StreamReader, StreamWriter
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from httpxy.config import DEFAULT_CONFIG, ProxyConfig
from httpxy.connection import ManagedConnection
from httpxy.connector import OutboundConnection, connect_to_target
from httpxy.errors import (
    ConnectError,
    ExtractError,
    IncompleteRequest,
    RelayIOError,
    response_for,
)
from httpxy.gate import ConcurrencyGate, ConnectionSlot
from httpxy.log import TRACE
from httpxy.relay import RelayResult, relay
from httpxy.request import read_request
from httpxy.rewrite import RewriteMode, rewrite_request
from httpxy.target import ParsedTarget, extract_target

logger = logging.getLogger(__name__)


class Outcome(Enum):
    RELAYED = "relayed"
    INCOMPLETE = "incomplete"        # no response sent
    REJECTED = "rejected"            # 400 sent
    UNREACHABLE = "unreachable"      # 502 sent
    RELAY_ERROR = "relay-error"      # torn down mid-stream
    FAILED = "failed"                # unexpected exception


@dataclass
class PipelineResult:
    outcome: Outcome
    target: Optional[ParsedTarget] = None
    mode: Optional[RewriteMode] = None
    relay: Optional[RelayResult] = None
    error: Optional[BaseException] = None


def describe_peer(conn: ManagedConnection) -> str:
    peer = conn.peername
    if not peer:
        return "unknown client"
    if conn.family == socket.AF_INET6:
        return f"IPv6 client [{peer[0]}]:{peer[1]}"
    return f"IPv4 client {peer[0]}:{peer[1]}"


# ============================================================================
# Pipeline
# ============================================================================


class _ProxyHandler:
    """Runs the request-to-relay pipeline for each accepted connection."""

    __slots__ = ("_proxy", "gate", "config")

    def __init__(
        self, proxy: ProxyServer, gate: ConcurrencyGate, config: ProxyConfig
    ):
        self._proxy = proxy
        self.gate = gate
        self.config = config

    async def handle_client(
        self, reader: StreamReader, writer: StreamWriter
    ) -> None:
        """Entry point for each new connection (called by ``asyncio.Server``)."""
        client = ManagedConnection(reader, writer)
        task = asyncio.current_task()
        self._proxy._track(client, task)
        slot: Optional[ConnectionSlot] = None

        try:
            slot = await self.gate.acquire()
            logger.debug("%s connected (%d/%d)", describe_peer(client),
                         self.gate.outstanding, self.gate.ceiling)
            result = await self.process(client)
            logger.debug("%s done: %s", describe_peer(client), result.outcome.value)
        except asyncio.CancelledError:
            logger.debug("Pipeline cancelled")
            raise
        finally:
            if slot is not None:
                slot.release()
            self._proxy._untrack(client, task)
            await client.close()

    async def process(self, client: ManagedConnection) -> PipelineResult:
        """Run one pipeline on *client*; never raises except on cancellation."""
        target: Optional[OutboundConnection] = None
        parsed: Optional[ParsedTarget] = None

        try:
            request = await read_request(client.reader, self.config)
            if logger.isEnabledFor(TRACE):
                logger.trace("Received request:\n%s", request.raw.decode("latin-1"))

            parsed = extract_target(request.path)
            logger.info("%s %s", request.method, parsed)

            target = await connect_to_target(parsed.host, parsed.port, self.config)
            self._proxy._track(target.conn)

            outbound = rewrite_request(request, parsed)
            if outbound.mode is RewriteMode.PASSTHROUGH:
                logger.debug("Passing %s request through unmodified", request.method)
            try:
                await target.conn.write(outbound.data)
            except OSError as e:
                raise RelayIOError(f"sending request failed: {e}") from e

            result = await relay(client, target.conn, self.config.relay_chunk_size)
            logger.debug(
                "[%s] Relay ended on %s: %d bytes up, %d bytes down",
                parsed,
                result.ended_by,
                result.client_to_target,
                result.target_to_client,
            )
            if result.error:
                logger.debug("[%s] %s", parsed, result.error)
                return PipelineResult(
                    Outcome.RELAY_ERROR, parsed, outbound.mode, result, result.error
                )
            return PipelineResult(Outcome.RELAYED, parsed, outbound.mode, result)

        except IncompleteRequest as e:
            logger.debug("Incomplete request: %s", e)
            return PipelineResult(Outcome.INCOMPLETE, error=e)
        except ExtractError as e:
            logger.warning("Bad proxy URL %r: %s", e.path, e)
            await self._reject(client, e)
            return PipelineResult(Outcome.REJECTED, error=e)
        except ConnectError as e:
            logger.warning("Cannot connect to %s:%d: %s", e.host, e.port, e.reason)
            await self._reject(client, e)
            return PipelineResult(Outcome.UNREACHABLE, parsed, error=e)
        except RelayIOError as e:
            logger.debug("[%s] %s", parsed, e)
            return PipelineResult(Outcome.RELAY_ERROR, parsed, error=e)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Pipeline error: %s\n%s", e, traceback.format_exc())
            return PipelineResult(Outcome.FAILED, parsed, error=e)
        finally:
            if target is not None:
                self._proxy._untrack(target.conn)
                await target.close()

    @staticmethod
    async def _reject(client: ManagedConnection, exc: BaseException) -> None:
        response = response_for(exc)
        if response is not None:
            await client.send_best_effort(response)


# ============================================================================
# ProxyServer
# ============================================================================


class ProxyServer:
    """Forward proxy addressed through the request path.

    Usage::

        server = ProxyServer(ProxyConfig(port=8080))
        await server.start()
        # curl http://127.0.0.1:8080/http://example.com/
        await server.stop()
    """

    def __init__(
        self,
        config: ProxyConfig = DEFAULT_CONFIG,
        gate: Optional[ConcurrencyGate] = None,
    ):
        self.config = config.validate()
        self.gate = gate or ConcurrencyGate(config.max_concurrent)
        self.port = config.port
        self._handler = _ProxyHandler(self, self.gate, config)
        self._server: Optional[asyncio.Server] = None
        self._active_connections: set[ManagedConnection] = set()
        self._tasks: set[asyncio.Task] = set()

    # -- lifecycle ---------------------------------------------------------

    def _listen_socket(self) -> socket.socket:
        """Bind the listener: dual-stack IPv6 unless configured otherwise."""
        host = self.config.host
        infos = socket.getaddrinfo(
            host or None,
            self.config.port,
            type=socket.SOCK_STREAM,
            flags=socket.AI_PASSIVE,
        )
        family, _, proto, _, address = infos[0]
        try:
            sock = socket.socket(family, socket.SOCK_STREAM, proto)
        except OSError:
            if family != socket.AF_INET6 or self.config.ipv6_only:
                raise
            logger.warning("IPv6 unavailable, listening on IPv4 only")
            family, address = socket.AF_INET, ("0.0.0.0", self.config.port)
            sock = socket.socket(family, socket.SOCK_STREAM)

        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if family == socket.AF_INET6:
                sock.setsockopt(
                    socket.IPPROTO_IPV6,
                    socket.IPV6_V6ONLY,
                    1 if self.config.ipv6_only else 0,
                )
            sock.bind(address)
            sock.setblocking(False)
        except OSError:
            sock.close()
            raise
        return sock

    async def start(self) -> int:
        """Start listening.  Returns the bound port number."""
        sock = self._listen_socket()
        self._server = await asyncio.start_server(
            self._handler.handle_client, sock=sock
        )
        self.port = sock.getsockname()[1]
        if sock.family == socket.AF_INET6 and not self.config.ipv6_only:
            mode = "Dual-stack"
        elif sock.family == socket.AF_INET6:
            mode = "IPv6-only"
        else:
            mode = "IPv4"
        logger.info(
            "%s proxy listening on port %d (max concurrent %d)",
            mode,
            self.port,
            self.gate.ceiling,
        )
        return self.port

    async def serve_forever(self) -> None:
        if self._server is None:
            await self.start()
        assert self._server is not None
        await self._server.serve_forever()

    async def stop(self) -> None:
        """Stop accepting new connections and close all active ones."""
        if self._server:
            if self._server.is_serving():
                self._server.close()
            self._server = None
        await self.close_all_handlers()
        logger.info("Proxy stopped (was :%d)", self.port)

    async def close_all_handlers(self) -> None:
        """Abort every tracked connection and wait for the pipelines to unwind."""
        connections = list(self._active_connections)
        if connections:
            logger.info("Force-closing %d active connection(s)", len(connections))
        await asyncio.gather(
            *(conn.close(force=True) for conn in connections),
            return_exceptions=True,
        )

        tasks = [t for t in self._tasks if not t.done()]
        for t in tasks:
            t.cancel()
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=5.0)
            if pending:
                logger.warning("%d pipeline(s) did not finish in time", len(pending))

    @property
    def active(self) -> int:
        """Pipelines currently holding a gate slot."""
        return self.gate.outstanding

    async def __aenter__(self) -> ProxyServer:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.stop()

    # -- connection tracking -----------------------------------------------

    def _track(
        self, conn: ManagedConnection, task: Optional[asyncio.Task] = None
    ) -> None:
        self._active_connections.add(conn)
        if task is not None:
            self._tasks.add(task)

    def _untrack(
        self, conn: ManagedConnection, task: Optional[asyncio.Task] = None
    ) -> None:
        self._active_connections.discard(conn)
        if task is not None:
            self._tasks.discard(task)
