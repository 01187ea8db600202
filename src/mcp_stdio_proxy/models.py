"""Core data models for the MCP stdio proxy"""

import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional

from mcp import types

from .errors import ConfigError


class Capability(str, Enum):
    """Category of MCP operations a backend may support."""

    TOOLS = "tools"
    RESOURCES = "resources"
    PROMPTS = "prompts"

    @classmethod
    def from_server_capabilities(
        cls, caps: Optional[types.ServerCapabilities]
    ) -> FrozenSet["Capability"]:
        """Derive the capability set advertised in an initialize result."""
        if caps is None:
            return frozenset()
        found = set()
        if caps.tools is not None:
            found.add(cls.TOOLS)
        if caps.resources is not None:
            found.add(cls.RESOURCES)
        if caps.prompts is not None:
            found.add(cls.PROMPTS)
        return frozenset(found)


@dataclass(frozen=True)
class BackendConfig:
    """Launch settings for one stdio backend.

    Attributes:
        name: Route name, exposed as /mcp/<name>
        command: Executable to launch
        args: Command line arguments
        env: Variables overlaid on the proxy's own environment
    """
    name: str
    command: str
    args: List[str] = field(default_factory=list)
    env: Optional[Dict[str, str]] = None


@dataclass
class Session:
    """One caller's conversation with one backend.

    Attributes:
        session_id: Opaque id, also the value of the mcp-session-id header
        backend_name: Backend this session forwards to, fixed at creation
        server: Forwarding MCP server owned by this session
        transport: Streamable HTTP transport feeding the server
        last_activity: Clock reading of the last request (monotonic seconds)
        clock: Time source shared with the owning registry
        created_at: Wall clock creation time, for listings
        in_flight: Requests or streams currently being handled
        cancel_scope: Scope of the task running the server, set once started
    """
    session_id: str
    backend_name: str
    server: Any
    transport: Any
    last_activity: float
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    created_at: datetime = field(default_factory=datetime.now)
    in_flight: int = 0
    cancel_scope: Any = field(default=None, repr=False)

    def touch(self) -> None:
        """Update last_activity to now."""
        self.last_activity = self.clock()

    def idle_for(self, now: Optional[float] = None) -> float:
        """Seconds elapsed since last activity."""
        if now is None:
            now = self.clock()
        return max(0.0, now - self.last_activity)

    def to_dict(self) -> Dict[str, Any]:
        """Convert session to dictionary format for JSON serialization."""
        return {
            "session_id": self.session_id,
            "backend": self.backend_name,
            "created_at": self.created_at.isoformat(),
            "idle_seconds": round(self.idle_for(), 3),
            "in_flight": self.in_flight,
        }


@dataclass
class ProxyConfig:
    """Configuration for the proxy server.

    Attributes:
        host: Host address to bind to
        port: Port for the proxy server
        servers: Backends by route name, in declaration order
        idle_timeout: Seconds of inactivity before a session is reaped
        sweep_interval: Seconds between idle sweeps
        startup_timeout: Seconds allowed for a backend's MCP handshake
        json_response: Answer POSTs with plain JSON instead of SSE streams
    """
    host: str = "127.0.0.1"
    port: int = 9802
    servers: Dict[str, BackendConfig] = field(default_factory=dict)
    idle_timeout: float = 1800.0
    sweep_interval: float = 60.0
    startup_timeout: float = 30.0
    json_response: bool = False

    def validate(self) -> None:
        """Validate configuration values.

        Raises:
            ConfigError: If configuration is invalid
        """
        if isinstance(self.port, bool) or not isinstance(self.port, int):
            raise ConfigError("port must be an integer")
        if self.port < 1 or self.port > 65535:
            raise ConfigError("port must be between 1 and 65535")
        if self.idle_timeout <= 0:
            raise ConfigError("idle_timeout must be positive")
        if self.sweep_interval <= 0:
            raise ConfigError("sweep_interval must be positive")
        if self.startup_timeout <= 0:
            raise ConfigError("startup_timeout must be positive")
        for name, server in self.servers.items():
            if not name or "/" in name:
                raise ConfigError(f"invalid server name: {name!r}")
            if not server.command:
                raise ConfigError(f"server '{name}' must have a 'command' string")
