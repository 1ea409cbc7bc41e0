"""Exception hierarchy for OAuth 2.0 credential management errors.

Provides specific exception types for different failure modes so the HTTP
layer can tell the operator exactly what went wrong and how to recover.
"""

from __future__ import annotations


class OAuth2Error(Exception):
    """Base exception for all OAuth 2.0 related errors."""

    pass


class ConfigError(OAuth2Error):
    """Raised when required setup (account, client, endpoints) is missing.

    Not retryable without operator action.
    """

    pass


class PKCEError(OAuth2Error):
    """Raised when PKCE parameter generation fails."""

    pass


class AuthorizationError(OAuth2Error):
    """Raised when user authorization fails."""

    pass


class AuthorizationDenied(AuthorizationError):
    """Raised when the authorization server redirects back with an error.

    Carries the provider's error code and description verbatim.
    """

    def __init__(self, error: str, error_description: str | None = None):
        self.error = error
        self.error_description = error_description
        message = f"Authorization denied: {error}"
        if error_description:
            message += f" ({error_description})"
        super().__init__(message)


class AuthorizationCallbackError(OAuth2Error):
    """Raised when authorization server callback data is malformed or invalid.

    This indicates the authorization server sent an invalid callback URL,
    not that our callback handling code failed.
    """

    pass


class CsrfMismatch(AuthorizationCallbackError):
    """Raised when the callback state does not match a pending attempt.

    Covers unknown, expired and already-consumed state values. The token
    endpoint is never contacted in this case.
    """

    pass


class TokenError(OAuth2Error):
    """Raised when token operations fail.

    Attributes:
        error_code: OAuth error code from the provider (RFC 6749 Section 5.2),
            or a local code when the provider could not be reached.
        error_description: Human readable description, if any.
    """

    def __init__(
        self,
        message: str,
        error_code: str = "request_failed",
        error_description: str | None = None,
    ):
        super().__init__(message)
        self.error_code = error_code
        self.error_description = error_description


class TokenExchangeError(TokenError):
    """Raised when authorization code to token exchange fails."""

    pass


class RefreshError(TokenError):
    """Raised when token refresh fails. The stale credential is kept."""

    pass


class NotAuthenticated(OAuth2Error):
    """Raised when no usable credential is on file for an account."""

    pass


class CredentialStoreError(OAuth2Error):
    """Raised when the credential store cannot be read or written.

    Covers invalid storage keys and filesystem failures (permissions, disk
    full). The record on disk, if any, is left as it was.
    """

    pass
