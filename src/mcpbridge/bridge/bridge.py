"""Session-scoped process bridge.

Every client stream gets its own freshly spawned worker. Worker stdout
lines are relayed to the stream as ``message`` events, client input is
written to the worker's stdin, and either side ending tears the whole
session down.
"""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from collections.abc import Callable
from urllib.parse import urlencode

from mcpbridge.auth.models.credentials import CredentialRecord
from mcpbridge.bridge.environment import build_worker_environment
from mcpbridge.bridge.errors import InvalidPayload, SessionNotFound
from mcpbridge.bridge.process import DEFAULT_LINE_LIMIT, WorkerProcess
from mcpbridge.bridge.registry import SessionRegistry
from mcpbridge.bridge.session import BridgeSession, SessionState
from mcpbridge.bridge.stream import DEFAULT_MAX_PENDING, EventStream

logger = logging.getLogger(__name__)
worker_logger = logging.getLogger("mcpbridge.worker")

EnvironmentFactory = Callable[[CredentialRecord | None], dict[str, str]]


def _default_environment(credential: CredentialRecord | None) -> dict[str, str]:
    return build_worker_environment(
        credential, account_id=None, client_id=None, base_env=os.environ
    )


class ProcessBridge:
    """Relays between client event streams and per-session worker processes.

    Lifecycle per session: STARTING -> STREAMING -> CLOSED. Errors in one
    session close that session only.
    """

    def __init__(
        self,
        command: list[str],
        registry: SessionRegistry | None = None,
        environment_factory: EnvironmentFactory | None = None,
        endpoint_path: str = "/stream",
        cwd: str | None = None,
        line_limit: int = DEFAULT_LINE_LIMIT,
        max_pending: int = DEFAULT_MAX_PENDING,
        terminate_timeout: float = 5.0,
        exit_drain_timeout: float = 1.0,
    ):
        """Initialize the bridge.

        Args:
            command: Worker command line, spawned once per session
            registry: Session registry (a fresh one by default)
            environment_factory: Builds the worker environment from the
                current credential
            endpoint_path: Path clients POST input to
            cwd: Worker working directory
            line_limit: Longest stdout line accepted from a worker
            max_pending: Events buffered per stream before the relay waits
            terminate_timeout: Grace period between SIGTERM and SIGKILL
            exit_drain_timeout: How long to keep relaying output after the
                worker exits, while a descendant still holds its stdout
        """
        self.command = list(command)
        self.registry = registry or SessionRegistry()
        self._environment = environment_factory or _default_environment
        self.endpoint_path = endpoint_path
        self.cwd = cwd
        self.line_limit = line_limit
        self.max_pending = max_pending
        self.terminate_timeout = terminate_timeout
        self.exit_drain_timeout = exit_drain_timeout
        self._teardown_tasks: set[asyncio.Task] = set()

    def endpoint_url(self, session_id: str) -> str:
        """Address a client must POST input to for this session."""
        return f"{self.endpoint_path}?{urlencode({'sessionId': session_id})}"

    # ================================
    # Opening
    # ================================

    async def open_session(
        self, credential: CredentialRecord | None = None
    ) -> BridgeSession:
        """Spawn a worker for a new client stream and start relaying.

        The first event queued on the stream is ``endpoint``, carrying the
        submission address.

        Raises:
            SpawnError: If the worker cannot be started; nothing is registered
        """
        session_id = str(uuid.uuid4())
        worker = WorkerProcess(
            command=self.command,
            env=self._environment(credential),
            cwd=self.cwd,
            line_limit=self.line_limit,
        )
        await worker.spawn()

        stream = EventStream(session_id, max_pending=self.max_pending)
        session = BridgeSession(session_id=session_id, worker=worker, stream=stream)
        await stream.send("endpoint", self.endpoint_url(session_id))

        try:
            await self.registry.register(session)
        except Exception:
            await worker.terminate(timeout=self.terminate_timeout)
            raise

        relay_task = asyncio.create_task(
            self._relay_output(session), name=f"relay_{session_id}"
        )
        relay_task.add_done_callback(
            lambda t: self._on_relay_done(session_id, t)
        )
        diagnostics_task = asyncio.create_task(
            self._relay_diagnostics(session), name=f"diagnostics_{session_id}"
        )
        exit_task = asyncio.create_task(
            self._watch_exit(session, relay_task), name=f"exit_{session_id}"
        )
        session.tasks = [relay_task, diagnostics_task, exit_task]
        session.state = SessionState.STREAMING

        logger.info(f"Opened session {session_id} (worker PID: {worker.pid})")
        return session

    # ================================
    # Relay
    # ================================

    async def _relay_output(self, session: BridgeSession) -> None:
        """Forward each worker stdout line as one message event, in order."""
        try:
            async for line in session.worker.stdout_lines():
                await session.stream.send("message", line)
        except ValueError as e:
            logger.error(
                f"Session {session.session_id}: worker output line over "
                f"{self.line_limit} bytes, closing session: {e}"
            )

    async def _relay_diagnostics(self, session: BridgeSession) -> None:
        """Send worker stderr to the operator log, never to the client."""
        async for line in session.worker.stderr_lines():
            worker_logger.info(f"[{session.session_id}] {line}")

    async def _watch_exit(self, session: BridgeSession, relay_task: asyncio.Task) -> None:
        """Tear the session down once the worker process exits.

        Output already written is relayed for up to ``exit_drain_timeout``
        first; a descendant holding stdout open does not keep the session alive.
        """
        returncode = await session.worker.wait_exited()
        logger.debug(f"Worker for session {session.session_id} exited ({returncode})")
        await asyncio.wait({relay_task}, timeout=self.exit_drain_timeout)
        await self.close_session(session.session_id, reason="worker exited")

    def _on_relay_done(self, session_id: str, task: asyncio.Task) -> None:
        """Output ended (worker exit or crash): tear the session down."""
        if task.cancelled():
            return
        if task.exception() is not None:
            logger.error(f"Relay for session {session_id} failed: {task.exception()}")
        else:
            logger.debug(f"Worker output for session {session_id} ended")

        teardown = asyncio.create_task(
            self.close_session(session_id, reason="worker exited"),
            name=f"teardown_{session_id}",
        )
        self._teardown_tasks.add(teardown)
        teardown.add_done_callback(self._teardown_tasks.discard)

    # ================================
    # Input
    # ================================

    async def submit_input(self, session_id: str | None, payload: str) -> None:
        """Write one client message to the session's worker.

        Raises:
            SessionNotFound: If the session is unknown, closed or its worker
                has exited
            InvalidPayload: If the payload is empty or spans several lines
        """
        session = await self.registry.get(session_id) if session_id else None
        if session is None or not session.is_open:
            raise SessionNotFound(session_id)

        line = payload.rstrip("\r\n")
        if not line.strip():
            raise InvalidPayload("Payload is empty")
        if "\n" in line or "\r" in line:
            raise InvalidPayload("Payload must be a single line")

        async with session.input_lock:
            if not session.is_open:
                raise SessionNotFound(session_id)
            try:
                await session.worker.write_line(line)
            except ConnectionError as e:
                logger.warning(f"Session {session_id}: worker stopped accepting input")
                await self.close_session(session_id, reason="worker input closed")
                raise SessionNotFound(session_id) from e

        logger.debug(f"Forwarded {len(line)} bytes to session {session_id}")

    # ================================
    # Teardown
    # ================================

    async def close_session(self, session_id: str, reason: str = "closed") -> bool:
        """Tear a session down. Idempotent and safe to call concurrently.

        Returns:
            True if this call closed the session, False if it was already gone
        """
        session = await self.registry.unregister(session_id)
        if session is None:
            return False
        await self._teardown(session, reason)
        return True

    async def close_all(self) -> None:
        """Tear down every session (application shutdown)."""
        sessions = await self.registry.unregister_all()
        await asyncio.gather(
            *(self._teardown(session, "shutdown") for session in sessions)
        )
        if self._teardown_tasks:
            await asyncio.gather(*self._teardown_tasks, return_exceptions=True)

    async def _teardown(self, session: BridgeSession, reason: str) -> None:
        session.state = SessionState.CLOSED
        session.stream.close()

        current = asyncio.current_task()
        pending = [t for t in session.tasks if t is not current and not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        returncode = await session.worker.terminate(timeout=self.terminate_timeout)
        logger.info(
            f"Closed session {session.session_id} ({reason}, exit code: {returncode})"
        )
