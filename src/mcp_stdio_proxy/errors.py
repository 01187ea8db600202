"""Error types raised by the MCP stdio proxy"""

from mcp.shared.exceptions import McpError


class ProxyError(Exception):
    """Base class for proxy errors."""


class ConfigError(ProxyError, ValueError):
    """Configuration is missing or malformed. Fatal before startup."""


class BackendConnectionError(ProxyError, ConnectionError):
    """A backend failed to launch or to complete the MCP handshake."""

    def __init__(self, name: str, reason: str):
        super().__init__(f"Backend '{name}' failed to start: {reason}")
        self.name = name
        self.reason = reason


class NotFoundError(ProxyError, LookupError):
    """Unknown backend name or unknown session id."""


class UnavailableError(ProxyError):
    """Backend is configured but not ready to accept calls."""


class CloseError(ProxyError):
    """Closing a backend connection or a session failed."""


# Errors returned by a backend are relayed to the caller untouched.
ForwardingError = McpError
