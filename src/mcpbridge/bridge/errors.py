"""Exceptions raised by the process bridge."""

from __future__ import annotations


class BridgeError(Exception):
    """Base exception for process bridge errors."""

    pass


class SpawnError(BridgeError):
    """Raised when a worker process cannot be started.

    The session is never registered in this case.
    """

    pass


class SessionNotFound(BridgeError):
    """Raised when input targets a session that is closed or never existed."""

    def __init__(self, session_id: str | None):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class InvalidPayload(BridgeError):
    """Raised when submitted input cannot be framed as a single line."""

    pass
