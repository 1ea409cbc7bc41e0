"""Authorization flow models for OAuth 2.0 with PKCE.

Contains the authorization request and the pending attempt kept
between redirect and callback.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from urllib.parse import urlencode


class FlowState(str, Enum):
    """Lifecycle of one authorization attempt."""

    IDLE = "idle"
    AWAITING_CALLBACK = "awaiting_callback"
    EXCHANGING = "exchanging"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


@dataclass(frozen=True)
class AuthorizationRequest:
    """Authorization request parameters for the authorization code flow."""

    authorization_endpoint: str
    client_id: str
    redirect_uri: str
    code_challenge: str
    code_challenge_method: str
    state: str
    scope: str | None = None

    def build_authorization_url(self) -> str:
        """Build the complete authorization URL."""
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "code_challenge": self.code_challenge,
            "code_challenge_method": self.code_challenge_method,
            "state": self.state,
        }

        if self.scope:
            params["scope"] = self.scope

        separator = "&" if "?" in self.authorization_endpoint else "?"
        return f"{self.authorization_endpoint}{separator}{urlencode(params)}"


@dataclass
class AuthorizationAttempt:
    """One in-flight authorization round-trip, keyed by its CSRF state.

    Lives only between the redirect to the authorization server and the
    callback. The verifier is wiped once the code has been exchanged.
    """

    state: str
    verifier: str | None = field(repr=False)
    account_id: str
    client_id: str
    redirect_uri: str
    scope: str | None = None
    created_at: float = field(default_factory=time.time)
    status: FlowState = FlowState.AWAITING_CALLBACK
    failure_reason: str | None = None

    def is_expired(self, ttl: float, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return now >= self.created_at + ttl

    def fail(self, reason: str) -> None:
        self.status = FlowState.FAILED
        self.failure_reason = reason
        self.verifier = None
