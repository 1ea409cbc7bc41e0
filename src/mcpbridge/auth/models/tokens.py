"""Token request and response models for OAuth 2.0.

Contains token endpoint request parameters, the token endpoint response
and the token set persisted inside a credential record.
"""

from __future__ import annotations

import time
from dataclasses import dataclass

from pydantic import BaseModel


class TokenSet(BaseModel):
    """Tokens held by a credential record.

    Mutated in place on every refresh. ``expires_at`` is an absolute Unix
    timestamp; ``None`` means the provider did not say when it expires.
    """

    access_token: str
    refresh_token: str | None = None
    token_type: str = "Bearer"
    expires_in: int | None = None
    expires_at: float | None = None

    def needs_refresh(self, margin: float, now: float | None = None) -> bool:
        """Check whether the access token is inside the refresh margin.

        Args:
            margin: Refresh this many seconds before expiry
            now: Override for the current time (tests)
        """
        if self.expires_at is None:
            return False
        now = time.time() if now is None else now
        return now >= self.expires_at - margin

    def can_refresh(self) -> bool:
        """Check if token can be refreshed."""
        return bool(self.refresh_token)


@dataclass(frozen=True)
class TokenRequest:
    """Authorization code exchange parameters (RFC 6749 Section 4.1.3).

    Includes the PKCE code_verifier (RFC 7636).
    """

    token_endpoint: str
    code: str
    redirect_uri: str
    client_id: str
    code_verifier: str

    grant_type: str = "authorization_code"

    def to_form_data(self) -> dict[str, str]:
        """Convert to form data for application/x-www-form-urlencoded request.

        Token requests must use form encoding, not JSON (RFC 6749 Section 4.1.3).
        """
        return {
            "grant_type": self.grant_type,
            "code": self.code,
            "redirect_uri": self.redirect_uri,
            "client_id": self.client_id,
            "code_verifier": self.code_verifier,
        }


@dataclass(frozen=True)
class RefreshTokenRequest:
    """Refresh token request parameters (RFC 6749 Section 6)."""

    token_endpoint: str
    refresh_token: str
    client_id: str

    grant_type: str = "refresh_token"

    def to_form_data(self) -> dict[str, str]:
        """Convert to form data for application/x-www-form-urlencoded request."""
        return {
            "grant_type": self.grant_type,
            "refresh_token": self.refresh_token,
            "client_id": self.client_id,
        }


class TokenResponse(BaseModel):
    """Token endpoint response (RFC 6749 Section 5).

    Represents both successful responses (Section 5.1) and error
    responses (Section 5.2).
    """

    # Success response fields (RFC 6749 Section 5.1)
    access_token: str | None = None
    token_type: str = "Bearer"
    expires_in: int | None = None
    refresh_token: str | None = None
    scope: str | None = None

    # Error response fields (RFC 6749 Section 5.2)
    error: str | None = None
    error_description: str | None = None

    def is_success(self) -> bool:
        """Check if token response indicates success."""
        return self.error is None and self.access_token is not None

    def to_token_set(self, previous: TokenSet | None = None) -> TokenSet:
        """Convert a successful response into a TokenSet.

        Args:
            previous: Tokens being replaced. Their refresh token is kept
                when the provider does not issue a new one.

        Raises:
            ValueError: If response is not successful
        """
        if not self.is_success():
            raise ValueError("Cannot convert error response to TokenSet")

        refresh_token = self.refresh_token
        if refresh_token is None and previous is not None:
            refresh_token = previous.refresh_token

        expires_at = None
        if self.expires_in is not None:
            expires_at = time.time() + self.expires_in

        return TokenSet(
            access_token=self.access_token,
            refresh_token=refresh_token,
            token_type=self.token_type,
            expires_in=self.expires_in,
            expires_at=expires_at,
        )
