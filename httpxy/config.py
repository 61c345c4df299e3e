"""
config.py — Tunable knobs for the proxy and how they are loaded.

Values come from three layers, highest priority first: command-line
flags, the ``[proxy]`` section of an INI file, and the defaults on
:class:`ProxyConfig`.
"""

from __future__ import annotations

import argparse
import configparser
import logging
from dataclasses import dataclass, fields
from typing import Any, Optional

from httpxy.errors import ConfigError

logger = logging.getLogger(__name__)

SECTION = "proxy"


@dataclass(frozen=True)
class ProxyConfig:
    """Tunable knobs for the proxy.

    All timeouts are in seconds.  Sizes are in bytes.

    Attributes
    ----------
    host:
        Listen address.  ``::`` with ``ipv6_only`` off accepts both
        IPv4 and IPv6 clients.
    port:
        Listen port; 0 picks a free one.
    ipv6_only:
        Refuse IPv4-mapped clients on the IPv6 listener.
    max_concurrent:
        Ceiling of the concurrency gate: how many pipelines may run at
        once.  Further connections wait for a permit.
    read_timeout:
        Deadline for receiving a complete request from the client.
    streaming_read_timeout:
        Deadline used instead of ``read_timeout`` once the request's
        method is a streaming-control verb (RTSP negotiation is slow).
    connect_timeout:
        Per-candidate deadline when connecting to the target.
    relay_chunk_size:
        Maximum bytes moved per read in the relay loop.
    max_header_size:
        Upper bound on buffered bytes before the header terminator is
        seen.
    verbose:
        Enable TRACE logging.
    """

    host: str = "::"
    port: int = 8080
    ipv6_only: bool = False
    max_concurrent: int = 50

    read_timeout: float = 5.0
    streaming_read_timeout: float = 30.0
    connect_timeout: float = 10.0

    relay_chunk_size: int = 8192
    max_header_size: int = 65536

    verbose: bool = False

    def validate(self) -> ProxyConfig:
        if not 0 <= self.port <= 65535:
            raise ConfigError(f"port must be in 0..65535, got {self.port}")
        if self.max_concurrent < 1:
            raise ConfigError(
                f"max_concurrent must be positive, got {self.max_concurrent}"
            )
        for name in ("read_timeout", "streaming_read_timeout", "connect_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")
        if self.relay_chunk_size < 1 or self.max_header_size < 1:
            raise ConfigError("buffer sizes must be positive")
        return self


DEFAULT_CONFIG = ProxyConfig()


def _from_ini(ini: configparser.ConfigParser, name: str, default: Any) -> Any:
    if isinstance(default, bool):
        return ini.getboolean(SECTION, name, fallback=default)
    if isinstance(default, int):
        return ini.getint(SECTION, name, fallback=default)
    if isinstance(default, float):
        return ini.getfloat(SECTION, name, fallback=default)
    return ini.get(SECTION, name, fallback=default)


def load_config(
    args: Optional[argparse.Namespace] = None, path: Optional[str] = None
) -> ProxyConfig:
    """Build a validated :class:`ProxyConfig`.

    *path* (or ``args.config``) names an INI file; a missing file is
    silently skipped.  Any attribute of *args* that is not ``None`` and
    matches a config field overrides the INI value.
    """
    ini = configparser.ConfigParser()
    path = path or getattr(args, "config", None)
    if path:
        read = ini.read(path, encoding="utf-8")
        if read:
            logger.debug("Loaded config from %s", path)

    values: dict[str, Any] = {}
    try:
        for f in fields(ProxyConfig):
            default = getattr(DEFAULT_CONFIG, f.name)
            override = getattr(args, f.name, None) if args is not None else None
            values[f.name] = (
                override if override is not None else _from_ini(ini, f.name, default)
            )
    except ValueError as e:
        raise ConfigError(f"bad value in [{SECTION}] of {path}: {e}") from e

    return ProxyConfig(**values).validate()
