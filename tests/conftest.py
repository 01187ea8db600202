"""Pytest configuration and shared fixtures"""

import sys
from pathlib import Path
from typing import Dict, Iterable, Optional

import pytest
from mcp import types
from mcp.shared.exceptions import McpError

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from mcp_stdio_proxy.backend import BackendConnection
from mcp_stdio_proxy.models import BackendConfig, Capability


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeClient:
    """Stands in for a backend's ClientSession.

    Answers by JSON-RPC method name and records every request it was sent.
    """

    def __init__(
        self,
        results: Optional[Dict[str, types.Result]] = None,
        errors: Optional[Dict[str, types.ErrorData]] = None,
    ):
        self.results = results or {}
        self.errors = errors or {}
        self.calls = []

    async def send_request(self, request, result_type):
        self.calls.append((request, result_type))
        # Frame the request the way BaseSession.send_request does
        types.JSONRPCRequest(
            jsonrpc="2.0",
            id=len(self.calls),
            **request.model_dump(by_alias=True, mode="json", exclude_none=True),
        )
        method = request.root.method
        if method in self.errors:
            raise McpError(self.errors[method])
        return self.results[method]


def default_results() -> Dict[str, types.Result]:
    return {
        "tools/list": types.ListToolsResult(
            tools=[types.Tool(name="echo", inputSchema={"type": "object"})]
        ),
        "tools/call": types.CallToolResult(
            content=[types.TextContent(type="text", text="hello")]
        ),
        "prompts/list": types.ListPromptsResult(prompts=[]),
        "resources/list": types.ListResourcesResult(resources=[]),
    }


def make_backend(
    name: str = "echo",
    capabilities: Iterable[Capability] = (Capability.TOOLS,),
    client: Optional[FakeClient] = None,
    ready: bool = True,
) -> BackendConnection:
    """Build a BackendConnection bound to a fake client link."""
    backend = BackendConnection(BackendConfig(name=name, command=f"{name}-server"))
    backend._bind(client or FakeClient(default_results()), frozenset(capabilities))
    backend.ready = ready
    return backend


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_client():
    return FakeClient(default_results())


@pytest.fixture
def clock():
    return FakeClock()
