"""HTTP Server for the MCP stdio proxy"""

import argparse
import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import anyio
import uvicorn
from mcp.server.streamable_http import MCP_SESSION_ID_HEADER
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route
from starlette.types import Receive, Scope, Send

from . import __version__
from .config import DEFAULT_CONFIG_PATH, load_config
from .errors import ConfigError, NotFoundError, UnavailableError
from .models import ProxyConfig
from .proxy_manager import ProxyManager
from .session_manager import IdleReaper, SessionRegistry

logger = logging.getLogger(__name__)

_SESSION_HEADER = MCP_SESSION_ID_HEADER.encode("latin-1")


class McpEndpoint:
    """ASGI endpoint for /mcp/{server_name}.

    Requests carrying a known session id go to that session's transport.
    A POST without one starts a new session; the transport sends the new
    id back in the mcp-session-id response header.
    """

    def __init__(self, registry: SessionRegistry):
        self.registry = registry

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        server_name = request.path_params["server_name"]
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)

        try:
            session, created = await self.registry.open_session(
                server_name, session_id, create=request.method == "POST"
            )
        except NotFoundError as e:
            await JSONResponse({"error": str(e)}, status_code=404)(scope, receive, send)
            return
        except UnavailableError as e:
            await JSONResponse({"error": str(e)}, status_code=503)(scope, receive, send)
            return

        if not created:
            await self.registry.handle_request(session, scope, receive, send)
            return

        if session_id:
            # Stale id from a closed session; the new session has its own.
            scope = dict(scope)
            scope["headers"] = [
                (key, value) for key, value in scope["headers"] if key.lower() != _SESSION_HEADER
            ]

        status = await self.registry.handle_request(session, scope, receive, send)
        if status is None or status >= 400:
            logger.info(
                f"Session {session.session_id} rejected its first request "
                f"(status {status}), discarding"
            )
            await self.registry.close_session(session.session_id)


class ProxyServer:
    """Main proxy server."""

    def __init__(self, config: ProxyConfig, proxy_manager: Optional[ProxyManager] = None):
        """Initialize the server.

        Args:
            config: Server configuration
            proxy_manager: Backend registry to use (a new one by default)
        """
        self.config = config
        config.validate()

        self.proxy_manager = proxy_manager or ProxyManager(
            startup_timeout=config.startup_timeout
        )
        self.registry = SessionRegistry(
            self.proxy_manager,
            idle_timeout=config.idle_timeout,
            json_response=config.json_response,
        )
        self.reaper = IdleReaper(self.registry, interval=config.sweep_interval)
        self.app = self._build_app()

    def _build_app(self) -> Starlette:
        routes = [
            Route("/", self.list_servers, methods=["GET"]),
            Route("/health", self.health, methods=["GET"]),
            Route("/sessions", self.list_sessions, methods=["GET"]),
            Route("/sessions", self.purge_sessions, methods=["DELETE"]),
            Route("/mcp/{server_name}", McpEndpoint(self.registry)),
        ]
        return Starlette(routes=routes, lifespan=self.lifespan)

    @asynccontextmanager
    async def lifespan(self, app: Starlette) -> AsyncIterator[None]:
        """Start backends, sessions and the reaper; tear down in reverse."""
        async with self.proxy_manager.run():
            await self.proxy_manager.start_all(self.config.servers)
            self._log_endpoints()
            async with self.registry.run():
                async with anyio.create_task_group() as tg:
                    tg.start_soon(self.reaper.run)
                    try:
                        yield
                    finally:
                        logger.info("Shutting down...")
                        tg.cancel_scope.cancel()
        logger.info("Shutdown complete")

    def _log_endpoints(self) -> None:
        base = f"http://{self.config.host}:{self.config.port}"
        logger.info(f"MCP stdio proxy v{__version__} serving on {base}")
        logger.info("Available endpoints:")
        for name in self.proxy_manager.get_backend_names():
            logger.info(f"  -> {base}/mcp/{name}")
        logger.info(f"  -> {base}/health")

    async def list_servers(self, request: Request) -> JSONResponse:
        servers = [
            {"name": name, "endpoint": f"/mcp/{name}"}
            for name in self.proxy_manager.get_backend_names()
        ]
        return JSONResponse({"servers": servers})

    async def health(self, request: Request) -> JSONResponse:
        return JSONResponse({
            "status": "ok",
            "servers": self.proxy_manager.get_backend_names(),
            "sessions": self.registry.stats(),
        })

    async def list_sessions(self, request: Request) -> JSONResponse:
        return JSONResponse({"sessions": self.registry.list_sessions()})

    async def purge_sessions(self, request: Request) -> JSONResponse:
        result = await self.reaper.purge()
        return JSONResponse(result.to_dict())

    def serve(self) -> None:
        """Run the HTTP server until interrupted.

        uvicorn turns SIGINT/SIGTERM into a lifespan shutdown, which stops
        every backend before the process exits.
        """
        server = uvicorn.Server(
            uvicorn.Config(
                self.app,
                host=self.config.host,
                port=self.config.port,
                log_config=None,
                lifespan="on",
            )
        )
        server.run()


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="MCP stdio proxy - expose stdio MCP servers over streamable HTTP"
    )
    parser.add_argument(
        "--config",
        type=str,
        default=DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host to listen on (default: from config, else 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to listen on (default: from config, else 9802)",
    )
    parser.add_argument(
        "--idle-timeout",
        type=float,
        default=None,
        help="Seconds before an inactive session is closed",
    )
    parser.add_argument(
        "--sweep-interval",
        type=float,
        default=None,
        help="Seconds between idle session sweeps",
    )
    parser.add_argument(
        "--json-response",
        action="store_true",
        help="Answer POST requests with JSON instead of SSE streams",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args()

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        config = load_config(args.config)
        if args.host is not None:
            config.host = args.host
        if args.port is not None:
            config.port = args.port
        if args.idle_timeout is not None:
            config.idle_timeout = args.idle_timeout
        if args.sweep_interval is not None:
            config.sweep_interval = args.sweep_interval
        if args.json_response:
            config.json_response = True
        server = ProxyServer(config)
    except ConfigError as e:
        logger.error(f"Fatal: {e}")
        sys.exit(1)

    server.serve()


if __name__ == "__main__":
    main()
