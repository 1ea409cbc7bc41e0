"""Structured JSON error responses for the HTTP surface."""

from __future__ import annotations

from starlette.responses import JSONResponse

from mcpbridge.auth.models.errors import (
    AuthorizationCallbackError,
    AuthorizationDenied,
    ConfigError,
    CredentialStoreError,
    CsrfMismatch,
    NotAuthenticated,
    OAuth2Error,
    RefreshError,
    TokenError,
    TokenExchangeError,
)
from mcpbridge.bridge.errors import (
    BridgeError,
    InvalidPayload,
    SessionNotFound,
    SpawnError,
)

# Token errors with these codes never reached the provider (or got garbage back)
LOCAL_TOKEN_ERROR_CODES = {"request_failed", "invalid_response"}

# Most specific class first; the first isinstance match wins
_ERROR_TABLE: list[tuple[type[Exception], int, str, str]] = [
    (
        ConfigError,
        500,
        "config_error",
        "Set NETSUITE_ACCOUNT_ID, NETSUITE_CLIENT_ID and APP_BASE_URL, then restart.",
    ),
    (
        AuthorizationDenied,
        400,
        "authorization_denied",
        "Start again at /login. Check the integration's scopes and the user's role.",
    ),
    (
        CsrfMismatch,
        400,
        "csrf_mismatch",
        "Start a new login at /login. Callback links are single-use and expire.",
    ),
    (
        AuthorizationCallbackError,
        400,
        "invalid_callback",
        "Start a new login at /login.",
    ),
    (
        TokenExchangeError,
        400,
        "token_exchange_failed",
        "Start a new login at /login. Authorization codes are single-use.",
    ),
    (
        RefreshError,
        502,
        "refresh_failed",
        "The stored credential can no longer be refreshed. Log in again at /login.",
    ),
    (
        TokenError,
        502,
        "token_error",
        "Retry, or log in again at /login.",
    ),
    (
        NotAuthenticated,
        401,
        "not_authenticated",
        "No credential on file. Log in at /login.",
    ),
    (
        CredentialStoreError,
        500,
        "credential_store_error",
        "Check that SESSIONS_DIR exists and is writable by the server, "
        "then log in again at /login.",
    ),
    (
        OAuth2Error,
        500,
        "oauth_error",
        "Start again at /login.",
    ),
    (
        SessionNotFound,
        404,
        "session_not_found",
        "Open a new stream with GET /stream; closed sessions cannot be resumed.",
    ),
    (
        InvalidPayload,
        400,
        "invalid_payload",
        "Send exactly one JSON-RPC message per request, on a single line.",
    ),
    (
        SpawnError,
        500,
        "spawn_error",
        "Check WORKER_COMMAND and that the worker is installed.",
    ),
    (
        BridgeError,
        500,
        "bridge_error",
        "Open a new stream with GET /stream.",
    ),
]

_TOKEN_REMEDIATION = {
    "invalid_grant": (
        "The provider rejected the grant (expired, reused or revoked). "
        "Log in again at /login."
    ),
    "invalid_client": (
        "The provider rejected the client. Check NETSUITE_CLIENT_ID, "
        "NETSUITE_CLIENT_SECRET and OAUTH_CLIENT_AUTH_METHOD."
    ),
    "unauthorized_client": (
        "The integration is not allowed to use this grant type. "
        "Check the integration record's OAuth 2.0 settings."
    ),
}


def describe_error(exc: Exception) -> tuple[int, dict[str, str | None]]:
    """Map a domain exception to (HTTP status, JSON body)."""
    for error_type, status_code, code, remediation in _ERROR_TABLE:
        if isinstance(exc, error_type):
            break
    else:
        status_code, code, remediation = 500, "internal_error", "Check the server log."

    body: dict[str, str | None] = {
        "error": code,
        "message": str(exc),
        "remediation": remediation,
    }

    if isinstance(exc, AuthorizationDenied):
        body["error"] = exc.error
        body["error_description"] = exc.error_description
    elif isinstance(exc, TokenError):
        body["error"] = exc.error_code
        body["error_description"] = exc.error_description
        body["remediation"] = _TOKEN_REMEDIATION.get(exc.error_code, remediation)
        if isinstance(exc, TokenExchangeError) and exc.error_code in LOCAL_TOKEN_ERROR_CODES:
            status_code = 500

    return status_code, body


def error_response(exc: Exception) -> JSONResponse:
    status_code, body = describe_error(exc)
    return JSONResponse(body, status_code=status_code)
