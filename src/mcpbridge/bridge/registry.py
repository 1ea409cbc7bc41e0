"""Registry of live bridge sessions."""

from __future__ import annotations

import asyncio
import logging

from mcpbridge.bridge.session import BridgeSession

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Maps session IDs to live sessions.

    Shared by the stream handler, the input handler and the relay
    callbacks; every map access goes through one lock.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, BridgeSession] = {}
        self._lock = asyncio.Lock()

    # ================================
    # Creation
    # ================================

    async def register(self, session: BridgeSession) -> None:
        """Add a session.

        Raises:
            ValueError: If the session ID is already registered
        """
        async with self._lock:
            if session.session_id in self._sessions:
                raise ValueError(f"Session '{session.session_id}' is already registered")
            self._sessions[session.session_id] = session
        logger.debug(f"Registered session {session.session_id}")

    # ================================
    # Access
    # ================================

    async def get(self, session_id: str) -> BridgeSession | None:
        """Get a session. Returns None if it doesn't exist."""
        async with self._lock:
            return self._sessions.get(session_id)

    async def count(self) -> int:
        async with self._lock:
            return len(self._sessions)

    # ================================
    # Termination
    # ================================

    async def unregister(self, session_id: str) -> BridgeSession | None:
        """Remove a session.

        Returns the removed session, or None if it was already gone. Only
        one of several concurrent callers ever receives the session.
        """
        async with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is not None:
            logger.debug(f"Unregistered session {session_id}")
        return session

    async def unregister_all(self) -> list[BridgeSession]:
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        logger.debug(f"Unregistered all {len(sessions)} sessions")
        return sessions
