"""Connection to a single stdio MCP backend"""

import logging
import os
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Optional, Type

import anyio
from anyio.abc import TaskGroup, TaskStatus
from mcp import ClientSession, StdioServerParameters, types
from mcp.client.stdio import stdio_client
from mcp.server.lowlevel import Server
from mcp.shared.exceptions import McpError

from . import __version__
from .errors import BackendConnectionError, CloseError
from .models import BackendConfig, Capability
from .router import build_dispatch_table, describe_capabilities

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[types.ServerResult]]


class BackendConnection:
    """Owns one backend process and the MCP client link to it.

    The backend is launched over stdio and a single ClientSession is kept
    for its whole lifetime. Every session of the proxy that targets this
    backend gets its own forwarding Server, and all of them share that
    ClientSession. Responses are matched to requests by JSON-RPC id inside
    the SDK, so concurrent calls from different sessions do not mix.

    The stdio client and its ClientSession live in a host task of their
    own, so connections can be stopped in any order and from any task.

    No timeout is applied to forwarded calls: a backend that never answers
    blocks the calling session until it does.
    """

    def __init__(self, config: BackendConfig, startup_timeout: float = 30.0):
        """Initialize the connection.

        Args:
            config: Launch settings for the backend
            startup_timeout: Maximum time allowed for the MCP handshake
        """
        self.config = config
        self.startup_timeout = startup_timeout
        self.ready = False
        self.capabilities: FrozenSet[Capability] = frozenset()
        self.server_info: Optional[types.Implementation] = None
        self._client: Optional[ClientSession] = None
        self._dispatch: Dict[Type[types.Request], Type[types.Result]] = {}
        self._stop_requested: Optional[anyio.Event] = None
        self._finished: Optional[anyio.Event] = None
        self._close_error: Optional[Exception] = None

    @property
    def name(self) -> str:
        return self.config.name

    def _server_parameters(self) -> StdioServerParameters:
        env = None
        if self.config.env:
            env = {**os.environ, **self.config.env}
        return StdioServerParameters(
            command=self.config.command,
            args=list(self.config.args),
            env=env,
        )

    async def start(self, task_group: TaskGroup) -> None:
        """Launch the backend and perform the MCP handshake.

        The connection is hosted by a new task in task_group, which keeps
        the client link open until stop() is called. Returns once the
        handshake has finished.

        Args:
            task_group: Task group that hosts the connection

        Raises:
            BackendConnectionError: If launch or handshake fails
        """
        if self.ready:
            return

        params = self._server_parameters()
        logger.info(f"[{self.name}] Starting: {params.command} {' '.join(params.args)}".rstrip())

        self._stop_requested = anyio.Event()
        self._finished = anyio.Event()
        self._close_error = None
        try:
            await task_group.start(self._run, params)
        except BackendConnectionError:
            self._stop_requested = None
            raise

    async def _run(
        self,
        params: StdioServerParameters,
        *,
        task_status: TaskStatus[None] = anyio.TASK_STATUS_IGNORED,
    ) -> None:
        stop_requested, finished = self._stop_requested, self._finished
        started = False
        failure: Optional[str] = None
        try:
            async with stdio_client(params) as (read_stream, write_stream):
                async with ClientSession(
                    read_stream,
                    write_stream,
                    client_info=types.Implementation(
                        name=f"mcp-proxy/{self.name}", version=__version__
                    ),
                ) as client:
                    failure = await self._handshake(client)
                    if failure is None:
                        started = True
                        task_status.started()
                        await stop_requested.wait()
        except Exception as e:
            if not started:
                raise BackendConnectionError(
                    self.name, failure or str(e) or type(e).__name__
                ) from e
            self._close_error = e
        finally:
            self.ready = False
            self._client = None
            finished.set()

        if failure is not None:
            raise BackendConnectionError(self.name, failure)

    async def _handshake(self, client: ClientSession) -> Optional[str]:
        """Initialize the client link; return a failure reason, or None."""
        with anyio.move_on_after(self.startup_timeout) as scope:
            try:
                result = await client.initialize()
            except Exception as e:
                return str(e) or type(e).__name__
        if scope.cancelled_caught:
            return f"handshake did not finish within {self.startup_timeout}s"

        self._bind(client, Capability.from_server_capabilities(result.capabilities))
        self.server_info = result.serverInfo

        logger.info(f"[{self.name}] Connected ({result.serverInfo.name} {result.serverInfo.version})")
        for capability in describe_capabilities(self.capabilities):
            logger.info(f"  -> {capability}: enabled")
        return None

    def _bind(self, client: ClientSession, capabilities: FrozenSet[Capability]) -> None:
        """Attach a handshaken client link and build the dispatch table."""
        self._client = client
        self.capabilities = capabilities
        self._dispatch = build_dispatch_table(capabilities)
        self.ready = True

    async def stop(self) -> None:
        """Mark the backend unavailable and close the client link.

        Safe to call more than once, and in any order relative to other
        connections.

        Raises:
            CloseError: If closing the client link fails
        """
        was_ready = self.ready
        self.ready = False
        self._client = None
        stop_requested, self._stop_requested = self._stop_requested, None

        if stop_requested is None:
            if was_ready:
                logger.info(f"[{self.name}] Disconnected")
            return

        stop_requested.set()
        await self._finished.wait()

        error, self._close_error = self._close_error, None
        if error is not None:
            raise CloseError(f"Failed to close backend '{self.name}': {error}") from error
        logger.info(f"[{self.name}] Disconnected")

    def create_forwarding_endpoint(self) -> Server:
        """Create a new MCP Server that forwards every call to this backend.

        A handler is registered only for request types whose capability the
        backend advertised; anything else is answered by the Server itself
        with "Method not found".
        """
        server: Server = Server(f"mcp-proxy/{self.name}", version=__version__)
        for request_type, result_type in self._dispatch.items():
            server.request_handlers[request_type] = self._make_forwarder(result_type)
        return server

    def _make_forwarder(self, result_type: Type[types.Result]) -> Handler:
        async def forward(request: Any) -> types.ServerResult:
            if not self.ready or self._client is None:
                raise McpError(
                    types.ErrorData(
                        code=types.INTERNAL_ERROR,
                        message=f"Server '{self.name}' not ready",
                    )
                )
            # Inbound requests keep their jsonrpc/id envelope as extra fields;
            # the client link frames its own.
            outbound = type(request)(method=request.method, params=request.params)
            result = await self._client.send_request(types.ClientRequest(outbound), result_type)
            return types.ServerResult(result)

        return forward
