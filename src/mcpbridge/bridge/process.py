"""Worker subprocess handle.

Spawns one worker speaking line-delimited messages on stdio, and owns
its pipes and termination.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

from mcpbridge.bridge.errors import SpawnError

logger = logging.getLogger(__name__)

DEFAULT_LINE_LIMIT = 16 * 1024 * 1024
STDERR_CHUNK_SIZE = 64 * 1024
EXIT_POLL_INTERVAL = 0.1


@dataclass
class WorkerProcess:
    """Manages a single worker subprocess with its full lifecycle."""

    command: list[str]
    env: dict[str, str] | None = field(default=None, repr=False)
    cwd: str | None = None
    line_limit: int = DEFAULT_LINE_LIMIT
    process: asyncio.subprocess.Process | None = None

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process else None

    @property
    def returncode(self) -> int | None:
        return self.process.returncode if self.process else None

    @property
    def is_running(self) -> bool:
        return self.process is not None and self.process.returncode is None

    async def spawn(self) -> None:
        """Start the worker subprocess.

        Raises:
            SpawnError: If the command is empty or cannot be executed
        """
        if not self.command:
            raise SpawnError("Worker command is empty")

        try:
            logger.debug(f"Starting worker subprocess: {self.command}")
            self.process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env,
                cwd=self.cwd,
                limit=self.line_limit,
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            self.process = None
            raise SpawnError(f"Failed to start worker {self.command[0]!r}: {e}") from e

        logger.debug(f"Worker subprocess started (PID: {self.process.pid})")

    async def write_line(self, line: str) -> None:
        """Write one line to the worker's stdin.

        Raises:
            ConnectionError: If the worker no longer accepts input
        """
        if self.process is None or self.process.stdin is None:
            raise ConnectionError("Worker process is not running")
        stdin = self.process.stdin
        if stdin.is_closing():
            raise ConnectionError("Worker stdin is closed")

        try:
            stdin.write((line + "\n").encode("utf-8"))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise ConnectionError("Worker process closed its input") from e

    async def stdout_lines(self) -> AsyncIterator[str]:
        """Yield stdout lines without their terminators, skipping blank lines.

        A trailing line without a newline is yielded at EOF.

        Raises:
            ValueError: If a single line exceeds ``line_limit``
        """
        if self.process is None or self.process.stdout is None:
            return
        stdout = self.process.stdout
        while True:
            raw = await stdout.readline()
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if line.strip():
                yield line

    async def stderr_lines(self) -> AsyncIterator[str]:
        """Yield diagnostic output line by line, without a length limit."""
        if self.process is None or self.process.stderr is None:
            return
        stderr = self.process.stderr
        pending = ""
        while True:
            chunk = await stderr.read(STDERR_CHUNK_SIZE)
            if not chunk:
                break
            pending += chunk.decode("utf-8", errors="replace")
            *lines, pending = pending.split("\n")
            for line in lines:
                if line.strip():
                    yield line.rstrip("\r")
        if pending.strip():
            yield pending.rstrip("\r")

    async def wait_exited(self) -> int | None:
        """Wait until the worker process itself has exited.

        ``Process.wait()`` can keep blocking while a descendant still holds
        the worker's pipes; ``returncode`` is set as soon as the worker exits.
        """
        if self.process is None:
            return None
        while self.process.returncode is None:
            await asyncio.sleep(EXIT_POLL_INTERVAL)
        return self.process.returncode

    def _signal_group(self, sig: signal.Signals) -> None:
        """Signal the worker's process group (the worker and its descendants)."""
        try:
            os.killpg(self.process.pid, sig)
        except (ProcessLookupError, PermissionError):
            logger.debug(f"Worker group {self.process.pid} already gone, skipping {sig.name}")

    async def terminate(self, timeout: float = 5.0) -> int | None:
        """Stop the worker and everything it started, then reap it.

        Sends SIGTERM to the worker's process group, then SIGKILL after
        ``timeout``. Descendants left behind by a worker that already
        exited are killed too. Safe to call more than once. Never raises.

        Returns:
            The exit code, or None if the process could not be reaped
        """
        if self.process is None:
            return None
        process = self.process

        try:
            if process.stdin and not process.stdin.is_closing():
                process.stdin.close()

            if process.returncode is not None:
                self._signal_group(signal.SIGKILL)
                return process.returncode

            self._signal_group(signal.SIGTERM)

            try:
                await asyncio.wait_for(self.wait_exited(), timeout=timeout)
                logger.debug(f"Worker {process.pid} exited after SIGTERM")
                self._signal_group(signal.SIGKILL)
                return process.returncode
            except asyncio.TimeoutError:
                logger.debug(
                    f"Worker {process.pid} didn't exit after SIGTERM, sending SIGKILL"
                )

            self._signal_group(signal.SIGKILL)

            try:
                await asyncio.wait_for(self.wait_exited(), timeout=2.0)
                logger.debug(f"Worker {process.pid} killed")
            except asyncio.TimeoutError:
                logger.error(f"Worker {process.pid} didn't die after SIGKILL")

        except Exception as e:
            logger.error(f"Error during shutdown of worker {process.pid}: {e}")

        return process.returncode
