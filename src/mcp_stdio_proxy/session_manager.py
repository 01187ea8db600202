"""Session Registry and Idle Reaper for the MCP stdio proxy"""

import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

import anyio
from anyio.abc import TaskGroup, TaskStatus
from mcp.server.streamable_http import StreamableHTTPServerTransport
from starlette.types import Message, Receive, Scope, Send

from .backend import BackendConnection
from .errors import CloseError, NotFoundError, UnavailableError
from .models import Session
from .proxy_manager import ProxyManager

logger = logging.getLogger(__name__)


@dataclass
class PurgeResult:
    """Outcome of one idle sweep."""
    purged: int
    remaining: int

    def to_dict(self) -> Dict[str, int]:
        return {"purged": self.purged, "remaining": self.remaining}


class SessionRegistry:
    """Maps session ids to live sessions.

    The registry is the only source of truth for whether a session is
    alive: a session is reachable exactly while its id is present here,
    and an id is never reused once removed.

    All mutations run on one event loop and contain no await, so they are
    atomic with respect to each other. Each session's MCP server runs as a
    task in the registry's task group; see run().
    """

    def __init__(
        self,
        proxy_manager: ProxyManager,
        idle_timeout: float = 1800.0,
        json_response: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the session registry.

        Args:
            proxy_manager: Source of backend connections
            idle_timeout: Seconds of inactivity after which a session is idle
            json_response: Answer POSTs with JSON bodies instead of SSE
            clock: Monotonic time source, in seconds
        """
        self.proxy_manager = proxy_manager
        self.idle_timeout = idle_timeout
        self.json_response = json_response
        self.clock = clock
        self._sessions: Dict[str, Session] = {}
        self._task_group: Optional[TaskGroup] = None

    @asynccontextmanager
    async def run(self) -> AsyncIterator[None]:
        """Keep the registry's task group open; close all sessions on exit."""
        if self._task_group is not None:
            raise RuntimeError("SessionRegistry.run() is already active")

        async with anyio.create_task_group() as tg:
            self._task_group = tg
            logger.debug("Session registry started")
            try:
                yield
            finally:
                with anyio.CancelScope(shield=True):
                    await self.close_all()
                tg.cancel_scope.cancel()
                self._task_group = None
                logger.debug("Session registry stopped")

    def _require_backend(self, backend_name: str) -> BackendConnection:
        backend = self.proxy_manager.get_backend(backend_name)
        if backend is None:
            raise NotFoundError(f"Server '{backend_name}' not found")
        if not backend.ready:
            raise UnavailableError(f"Server '{backend_name}' not ready")
        return backend

    async def open_session(
        self,
        backend_name: str,
        session_id: Optional[str] = None,
        create: bool = True,
    ) -> Tuple[Session, bool]:
        """Resolve a request to a session, creating one if allowed.

        A known session is touched before anything else happens. A session
        id that belongs to another backend counts as unknown.

        Args:
            backend_name: Backend named by the request route
            session_id: Session id supplied by the caller, if any
            create: Whether an unknown or missing id may start a new session

        Returns:
            Tuple of (session, created)

        Raises:
            NotFoundError: Backend unknown, or session unknown and create is False
            UnavailableError: Backend known but not ready
        """
        if session_id:
            session = self._sessions.get(session_id)
            if session is not None and session.backend_name == backend_name:
                session.touch()
                self._require_backend(backend_name)
                return session, False

        self._require_backend(backend_name)
        if not create:
            if session_id:
                raise NotFoundError(f"Session '{session_id}' not found")
            raise NotFoundError("Missing session id")
        return await self.create_session(backend_name), True

    async def create_session(self, backend_name: str) -> Session:
        """Create a new Active session for a backend.

        The id is generated, the forwarding server built and the entry
        inserted in one step, before the transport sees any request.

        Raises:
            NotFoundError: If the backend is unknown
            UnavailableError: If the backend is not ready
            RuntimeError: If the registry is not running
        """
        backend = self._require_backend(backend_name)
        if self._task_group is None:
            raise RuntimeError("Session registry is not running")

        session_id = uuid.uuid4().hex
        session = Session(
            session_id=session_id,
            backend_name=backend_name,
            server=backend.create_forwarding_endpoint(),
            transport=StreamableHTTPServerTransport(
                mcp_session_id=session_id,
                is_json_response_enabled=self.json_response,
            ),
            last_activity=self.clock(),
            clock=self.clock,
        )
        self._sessions[session_id] = session

        await self._task_group.start(self._run_session, session)
        logger.info(f"Created session {session_id} for '{backend_name}'")
        return session

    async def _run_session(
        self,
        session: Session,
        *,
        task_status: TaskStatus[None] = anyio.TASK_STATUS_IGNORED,
    ) -> None:
        server = session.server
        try:
            with anyio.CancelScope() as scope:
                session.cancel_scope = scope
                async with session.transport.connect() as (read_stream, write_stream):
                    task_status.started()
                    try:
                        await server.run(
                            read_stream,
                            write_stream,
                            server.create_initialization_options(),
                            stateless=False,
                        )
                    except Exception as e:
                        logger.error(f"Session {session.session_id} crashed: {e}")
        finally:
            # The channel is gone; drop the entry unless already removed.
            if self._sessions.get(session.session_id) is session:
                del self._sessions[session.session_id]
                logger.info(f"Session {session.session_id} closed by transport")

    async def handle_request(
        self, session: Session, scope: Scope, receive: Receive, send: Send
    ) -> Optional[int]:
        """Feed one HTTP request to a session's transport.

        The session is touched first. It counts as busy until the response,
        which may be a long-lived event stream, has finished.

        Returns:
            HTTP status the transport answered with, if any
        """
        session.touch()
        session.in_flight += 1
        status: Optional[int] = None

        async def send_wrapper(message: Message) -> None:
            nonlocal status
            if message["type"] == "http.response.start" and status is None:
                status = message["status"]
            await send(message)

        try:
            await session.transport.handle_request(scope, receive, send_wrapper)
        finally:
            session.in_flight -= 1
            session.touch()
        return status

    def get_session(self, session_id: str) -> Optional[Session]:
        """Get a session by ID.

        Returns:
            Session or None if not found
        """
        return self._sessions.get(session_id)

    def list_sessions(self) -> List[Dict[str, Any]]:
        """List all active sessions."""
        return [session.to_dict() for session in self._sessions.values()]

    def is_idle(self, session: Session, now: Optional[float] = None) -> bool:
        """Whether a session has no open request and exceeded the idle timeout."""
        if session.in_flight > 0:
            return False
        return session.idle_for(self.clock() if now is None else now) > self.idle_timeout

    def idle_session_ids(self) -> List[str]:
        """Ids of all sessions currently idle, oldest activity first."""
        now = self.clock()
        idle = [s for s in self._sessions.values() if self.is_idle(s, now)]
        idle.sort(key=lambda s: s.last_activity)
        return [s.session_id for s in idle]

    def stats(self) -> Dict[str, int]:
        """Session counts for health reporting."""
        total = len(self._sessions)
        stale = len(self.idle_session_ids())
        return {"total": total, "active": total - stale, "stale": stale}

    async def close_session(self, session_id: str) -> bool:
        """Close a session and remove it from the registry.

        Closing an unknown or already closed session does nothing.

        Returns:
            True if the session was closed, False if not found
        """
        session = self._sessions.pop(session_id, None)
        if session is None:
            logger.debug(f"Session not found: {session_id}")
            return False

        try:
            await session.transport.terminate()
        except Exception as e:
            error = CloseError(f"Failed to terminate session {session_id}: {e}")
            logger.warning(str(error))

        if session.cancel_scope is not None:
            session.cancel_scope.cancel()

        logger.info(f"Closed session {session_id} ('{session.backend_name}')")
        return True

    async def close_all(self) -> None:
        """Close all sessions."""
        for session_id in list(self._sessions.keys()):
            await self.close_session(session_id)

    @property
    def session_count(self) -> int:
        """Get the number of active sessions."""
        return len(self._sessions)


class IdleReaper:
    """Periodically closes sessions idle past the registry's timeout.

    With idle timeout T and sweep interval I, a session is closed at most
    T + I seconds after its last activity.
    """

    def __init__(self, registry: SessionRegistry, interval: float = 60.0):
        self.registry = registry
        self.interval = interval

    async def run(self) -> None:
        """Sweep forever, once per interval. Cancel to stop."""
        logger.info(
            f"Idle reaper running every {self.interval:g}s "
            f"(idle timeout {self.registry.idle_timeout:g}s)"
        )
        while True:
            await anyio.sleep(self.interval)
            try:
                result = await self.sweep()
            except Exception as e:
                logger.exception(f"Idle sweep failed: {e}")
                continue
            if result.purged:
                logger.info(
                    f"Reaped {result.purged} idle session(s), {result.remaining} remaining"
                )

    async def sweep(self) -> PurgeResult:
        """Close every idle session once.

        Idleness is checked again right before each close, so a session
        touched while an earlier one was being closed survives.
        """
        purged = 0
        for session_id in self.registry.idle_session_ids():
            session = self.registry.get_session(session_id)
            if session is None or not self.registry.is_idle(session):
                continue
            if await self.registry.close_session(session_id):
                purged += 1
        return PurgeResult(purged=purged, remaining=self.registry.session_count)

    async def purge(self) -> PurgeResult:
        """Run a sweep on demand and report the counts."""
        result = await self.sweep()
        logger.info(f"Purged {result.purged} idle session(s), {result.remaining} remaining")
        return result
