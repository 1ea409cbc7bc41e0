"""OAuth 2.0 token endpoint client.

Implements RFC 6749 token endpoint interactions with PKCE (RFC 7636).
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any

import httpx
from pydantic import ValidationError

from mcpbridge.auth.models.errors import ConfigError, TokenError
from mcpbridge.auth.models.tokens import (
    RefreshTokenRequest,
    TokenRequest,
    TokenResponse,
)

logger = logging.getLogger(__name__)


class ClientAuthMethod(str, Enum):
    """How the client authenticates at the token endpoint.

    Chosen once per deployment; never inferred from which secrets happen
    to be present.
    """

    NONE = "none"
    CLIENT_SECRET_BASIC = "client_secret_basic"


class TokenExchanger:
    """Performs authorization code exchange and refresh calls.

    Uses application/x-www-form-urlencoded encoding as required by
    RFC 6749. Provider error responses come back as error TokenResponses;
    only transport and parsing failures raise.
    """

    def __init__(
        self,
        auth_method: ClientAuthMethod = ClientAuthMethod.NONE,
        client_secret: str | None = None,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        """Initialize token exchanger.

        Args:
            auth_method: Client authentication mode for this deployment
            client_secret: Secret for ``client_secret_basic``
            timeout: HTTP request timeout in seconds
            http_client: Pre-configured client (tests, shared pools)

        Raises:
            ConfigError: If confidential mode is selected without a secret
        """
        auth_method = ClientAuthMethod(auth_method)
        if auth_method is ClientAuthMethod.CLIENT_SECRET_BASIC and not client_secret:
            raise ConfigError(
                "client_secret_basic authentication requires a client secret"
            )

        self.auth_method = auth_method
        self._client_secret = client_secret
        self.timeout = timeout
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def exchange_code(self, token_request: TokenRequest) -> TokenResponse:
        """Exchange authorization code for tokens (RFC 6749 Section 4.1.3).

        Raises:
            TokenError: If the token endpoint cannot be reached or parsed
        """
        logger.debug(f"Exchanging authorization code at {token_request.token_endpoint}")
        return await self._post(
            token_request.token_endpoint,
            token_request.to_form_data(),
            token_request.client_id,
        )

    async def refresh(self, refresh_request: RefreshTokenRequest) -> TokenResponse:
        """Refresh an access token (RFC 6749 Section 6).

        Raises:
            TokenError: If the token endpoint cannot be reached or parsed
        """
        logger.debug(f"Refreshing access token at {refresh_request.token_endpoint}")
        return await self._post(
            refresh_request.token_endpoint,
            refresh_request.to_form_data(),
            refresh_request.client_id,
        )

    async def _post(
        self, endpoint: str, form_data: dict[str, str], client_id: str
    ) -> TokenResponse:
        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
        }
        auth = None
        if self.auth_method is ClientAuthMethod.CLIENT_SECRET_BASIC:
            auth = httpx.BasicAuth(client_id, self._client_secret)

        logger.debug(
            f"Token request: grant_type={form_data['grant_type']}, "
            f"client_id={client_id}, auth_method={self.auth_method.value}"
        )

        try:
            response = await self._http_client.post(
                endpoint, data=form_data, headers=headers, auth=auth
            )
        except httpx.HTTPError as e:
            raise TokenError(f"HTTP error calling token endpoint: {e}") from e

        return self._parse_token_response(response)

    def _parse_token_response(self, response: httpx.Response) -> TokenResponse:
        """Parse token endpoint response into TokenResponse.

        Handles both successful responses (200) and error responses (400+)
        according to RFC 6749 Section 5.

        Raises:
            TokenError: If a success response cannot be parsed
        """
        try:
            response_data: Any = response.json()
        except ValueError:
            response_data = None

        if response.status_code == 200:
            if not isinstance(response_data, dict) or "access_token" not in response_data:
                raise TokenError(
                    "Token response missing required access_token",
                    error_code="invalid_response",
                )
            try:
                token_response = TokenResponse(**response_data)
            except ValidationError as e:
                raise TokenError(
                    f"Invalid token response format: {e}", error_code="invalid_response"
                ) from e
            logger.info("Token endpoint call successful")
            return token_response

        if isinstance(response_data, dict):
            error_code = str(response_data.get("error") or "unknown_error")
            error_description = response_data.get("error_description")
        else:
            error_code = "unknown_error"
            error_description = f"HTTP {response.status_code}"

        logger.warning(
            f"Token endpoint returned {response.status_code}: "
            f"{error_code} - {error_description or 'No description provided'}"
        )
        return TokenResponse(error=error_code, error_description=error_description)

    async def close(self) -> None:
        """Close the HTTP client and clean up resources."""
        await self._http_client.aclose()
