"""
cli.py — Command-line entry point: parse flags, load config, run the loop.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
import traceback
from typing import Optional, Sequence

import uvloop

from httpxy import __version__
from httpxy.config import ProxyConfig, load_config
from httpxy.errors import ConfigError
from httpxy.log import setup_logging
from httpxy.server import ProxyServer

logger = logging.getLogger(__name__)


def port_number(value: str) -> int:
    try:
        port = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port: {value!r}") from None
    if not 0 < port <= 65535:
        raise argparse.ArgumentTypeError(f"port out of range: {port}")
    return port


def positive_int(value: str) -> int:
    try:
        n = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an integer: {value!r}") from None
    if n < 1:
        raise argparse.ArgumentTypeError(f"must be positive: {n}")
    return n


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="httpxy",
        description=(
            "HTTP-to-HTTP/RTSP proxy. Request /http://host:port/path, "
            "/https://host:port/path or /rtsp://[ipv6]:port/path."
        ),
    )
    parser.add_argument('-c', '--config', type=str, metavar='PATH', default='./httpxy.ini', help="Path to config (default: ./httpxy.ini)")
    parser.add_argument('-p', '--port', dest='port', type=port_number, metavar='PORT', default=None, help='Listening port (default: 8080)')
    parser.add_argument('--host', dest='host', type=str, metavar='HOST', default=None, help='Address to bind (default: ::)')
    parser.add_argument('-6', '--ipv6-only', dest='ipv6_only', action='store_true', default=None, help='IPv6 only mode (default: dual stack)')
    parser.add_argument('-v', '--verbose', dest='verbose', action='store_true', default=None, help='Enable verbose logging')
    parser.add_argument('-m', '--max-concurrent', dest='max_concurrent', type=positive_int, metavar='N', default=None, help='Maximum concurrent connections (default: 50)')
    parser.add_argument('--version', action='version', version=f"%(prog)s {__version__}")
    return parser


class Init:
    def __init__(self, config: ProxyConfig) -> None:
        self.loop: asyncio.AbstractEventLoop
        self.server: ProxyServer
        self.config = config
        self.in_progress: bool = False
        self.exit_code: int = 0

    def prepserver(self) -> int:
        self.loop = uvloop.new_event_loop()
        asyncio.set_event_loop(self.loop)

        def task_exception_handler(task: asyncio.Task[None]) -> None:
            try:
                task.result()
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.critical("Server failed: %s", traceback.format_exc())
                self.exit_code = 1
                if not self.in_progress:
                    self.terminated()

        try:
            self.server = ProxyServer(self.config)
            self.loop.add_signal_handler(signal.SIGTERM, self.terminated)
            self.loop.add_signal_handler(signal.SIGINT, self.terminated)
            run_server_task: asyncio.Task[None] = self.loop.create_task(self.server.serve_forever())
            run_server_task.set_name("Server")
            run_server_task.add_done_callback(task_exception_handler)
            self.loop.run_forever()
        finally:
            self.loop.close()
        return self.exit_code

    async def graceful_shutdown(self) -> None:
        await self.server.stop()
        tasks = [
            t for t in asyncio.all_tasks(self.loop)
            if t is not asyncio.current_task()
        ]
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def terminated(self) -> None:
        if self.in_progress:
            logger.info("Received second signal, exiting...")
            sys.exit(1)

        self.in_progress = True
        logger.info("Shutting down...")
        shutdown_task: asyncio.Task[None] = self.loop.create_task(self.graceful_shutdown())
        shutdown_task.set_name("Shutdown")

        def stop_loop_callback(future: asyncio.Future[None]) -> None:
            try:
                future.result()
            except asyncio.CancelledError:
                logger.debug("Cancelled")
            except Exception as e:
                logger.error("On exit: %s", e)
            logger.info("Shutdown complete.")
            self.loop.stop()

        shutdown_task.add_done_callback(stop_loop_callback)


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    setup_logging(bool(args.verbose))
    try:
        config = load_config(args)
    except ConfigError as e:
        logger.critical("Invalid configuration: %s", e)
        sys.exit(2)
    setup_logging(config.verbose)

    sys.exit(Init(config).prepserver())
