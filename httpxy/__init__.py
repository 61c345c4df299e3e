"""httpxy — path-addressed HTTP/RTSP forward proxy for small hosts."""

from httpxy import log  # noqa: F401  (installs the TRACE-capable logger class)
from httpxy.config import DEFAULT_CONFIG, ProxyConfig, load_config
from httpxy.errors import (
    ConfigError,
    ConnectError,
    EmptyHostError,
    ExtractError,
    IncompleteRequest,
    ProxyError,
    RelayIOError,
)
from httpxy.gate import ConcurrencyGate, ConnectionSlot
from httpxy.server import Outcome, PipelineResult, ProxyServer
from httpxy.target import Fallback, ParsedTarget, Scheme, extract_target

__version__ = "2.2.0"

__all__ = [
    "DEFAULT_CONFIG",
    "ConcurrencyGate",
    "ConfigError",
    "ConnectError",
    "ConnectionSlot",
    "EmptyHostError",
    "ExtractError",
    "Fallback",
    "IncompleteRequest",
    "Outcome",
    "ParsedTarget",
    "PipelineResult",
    "ProxyConfig",
    "ProxyError",
    "ProxyServer",
    "RelayIOError",
    "Scheme",
    "extract_target",
    "load_config",
]
