"""MCP stdio proxy - many stdio MCP servers behind one HTTP surface

This package launches a set of stdio MCP servers and exposes each of them
at /mcp/<name> over streamable HTTP. Every caller conversation becomes a
session with its own forwarding server; all sessions of one backend share
that backend's single stdio client link.
"""

__version__ = "0.1.0"

from .errors import (
    BackendConnectionError,
    CloseError,
    ConfigError,
    ForwardingError,
    NotFoundError,
    ProxyError,
    UnavailableError,
)
from .models import BackendConfig, Capability, ProxyConfig, Session
from .config import load_config
from .backend import BackendConnection
from .proxy_manager import ProxyManager
from .session_manager import IdleReaper, PurgeResult, SessionRegistry
from .server import ProxyServer

__all__ = [
    "BackendConfig",
    "BackendConnection",
    "BackendConnectionError",
    "Capability",
    "CloseError",
    "ConfigError",
    "ForwardingError",
    "IdleReaper",
    "NotFoundError",
    "ProxyConfig",
    "ProxyError",
    "ProxyManager",
    "ProxyServer",
    "PurgeResult",
    "Session",
    "SessionRegistry",
    "UnavailableError",
    "load_config",
]
