"""Short-lived correlation store for pending authorization attempts."""

from __future__ import annotations

import logging
import time

from mcpbridge.auth.models.errors import CsrfMismatch
from mcpbridge.auth.models.flow import AuthorizationAttempt
from mcpbridge.auth.services.security import state_matches

logger = logging.getLogger(__name__)

DEFAULT_ATTEMPT_TTL = 600.0
MAX_PENDING_ATTEMPTS = 32


class AttemptStore:
    """Holds pending authorization attempts keyed by CSRF state.

    Each state can be consumed at most once: ``consume`` removes the
    attempt before returning it, so a replayed callback finds nothing.
    At most ``max_pending`` attempts are held; adding one more evicts the
    oldest.
    """

    def __init__(
        self, ttl: float = DEFAULT_ATTEMPT_TTL, max_pending: int = MAX_PENDING_ATTEMPTS
    ) -> None:
        self.ttl = ttl
        self.max_pending = max(1, max_pending)
        self._attempts: dict[str, AuthorizationAttempt] = {}

    def add(self, attempt: AuthorizationAttempt) -> None:
        self.purge_expired()
        while len(self._attempts) >= self.max_pending:
            # dicts keep insertion order, so the first key is the oldest attempt
            oldest = next(iter(self._attempts))
            self._attempts.pop(oldest).fail("evicted")
            logger.debug("Evicted oldest pending authorization attempt")
        self._attempts[attempt.state] = attempt
        logger.debug(f"Stored authorization attempt for account {attempt.account_id}")

    def consume(self, state: str | None) -> AuthorizationAttempt:
        """Remove and return the attempt matching ``state``.

        Raises:
            CsrfMismatch: If no live attempt carries this state
        """
        self.purge_expired()

        if not state:
            raise CsrfMismatch(
                "Authorization server callback missing required state parameter"
            )

        attempt = self.discard(state)
        if attempt is None:
            raise CsrfMismatch(
                "State parameter does not match any pending authorization attempt "
                "(unknown, expired or already used)"
            )
        return attempt

    def discard(self, state: str | None) -> AuthorizationAttempt | None:
        """Drop the attempt for ``state`` if present. Never raises."""
        if not state:
            return None
        for stored_state in list(self._attempts):
            if state_matches(stored_state, state):
                return self._attempts.pop(stored_state)
        return None

    def purge_expired(self, now: float | None = None) -> int:
        now = time.time() if now is None else now
        expired = [
            state
            for state, attempt in self._attempts.items()
            if attempt.is_expired(self.ttl, now)
        ]
        for state in expired:
            self._attempts.pop(state).fail("expired")
        if expired:
            logger.debug(f"Purged {len(expired)} expired authorization attempts")
        return len(expired)

    def __len__(self) -> int:
        return len(self._attempts)
