"""Proxy Manager for stdio MCP backends"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Mapping, Optional

import anyio
from anyio.abc import TaskGroup

from .backend import BackendConnection
from .errors import BackendConnectionError
from .models import BackendConfig

logger = logging.getLogger(__name__)


class ProxyManager:
    """Registry of backend connections by route name.

    Backends are started one after another in declaration order. A backend
    that fails to start is logged and left out of the registry, so lookups
    for it return None exactly like an unconfigured name.

    Each connection runs in a host task of the manager's task group, so
    backends can be stopped individually without disturbing the others.
    """

    def __init__(self, startup_timeout: float = 30.0):
        """Initialize the proxy manager.

        Args:
            startup_timeout: Handshake timeout passed to each connection
        """
        self.startup_timeout = startup_timeout
        self._backends: Dict[str, BackendConnection] = {}
        self._task_group: Optional[TaskGroup] = None

    @asynccontextmanager
    async def run(self) -> AsyncIterator["ProxyManager"]:
        """Keep the task group hosting the backends open; stop all on exit."""
        if self._task_group is not None:
            raise RuntimeError("ProxyManager.run() is already active")

        async with anyio.create_task_group() as tg:
            self._task_group = tg
            try:
                yield self
            finally:
                with anyio.CancelScope(shield=True):
                    await self.stop_all()
                tg.cancel_scope.cancel()
                self._task_group = None

    def _create_connection(self, config: BackendConfig) -> BackendConnection:
        return BackendConnection(config, startup_timeout=self.startup_timeout)

    async def start_all(self, servers: Mapping[str, BackendConfig]) -> None:
        """Start one connection per configured backend.

        Args:
            servers: Backend configs by name, in declaration order

        Raises:
            RuntimeError: If called outside run()
        """
        if self._task_group is None:
            raise RuntimeError("Proxy manager is not running")

        logger.info(f"Starting {len(servers)} backend server(s)...")

        for name, config in servers.items():
            if name in self._backends:
                logger.warning(f"[{name}] Already started, skipping")
                continue
            backend = self._create_connection(config)
            try:
                await backend.start(self._task_group)
            except BackendConnectionError as e:
                logger.error(f"[{name}] Failed to start: {e.reason}")
                continue
            self._backends[name] = backend

        logger.info(f"{len(self._backends)} of {len(servers)} backend server(s) ready")

    def get_backend(self, name: str) -> Optional[BackendConnection]:
        """Get a backend connection by name.

        Returns:
            BackendConnection or None if not found
        """
        return self._backends.get(name)

    def get_backend_names(self) -> List[str]:
        """Get names of all registered backends, in start order."""
        return list(self._backends.keys())

    async def stop_backend(self, name: str) -> bool:
        """Stop one backend and remove it from the registry.

        Other backends keep running.

        Returns:
            True if the backend was stopped, False if not found
        """
        backend = self._backends.pop(name, None)
        if backend is None:
            return False
        await self._stop_quietly(backend)
        return True

    async def stop_all(self) -> None:
        """Stop every backend, best effort, then clear the registry."""
        backends = list(self._backends.values())
        if not backends:
            return
        logger.info(f"Stopping all {len(backends)} backend server(s)")

        for backend in backends:
            await self._stop_quietly(backend)

        self._backends.clear()
        logger.info("All backends stopped")

    async def _stop_quietly(self, backend: BackendConnection) -> None:
        try:
            await backend.stop()
        except Exception as e:
            logger.warning(f"[{backend.name}] Error while stopping: {e}")

    @property
    def backend_count(self) -> int:
        """Get the number of registered backends."""
        return len(self._backends)
