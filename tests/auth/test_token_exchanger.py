"""Tests for the token endpoint client.

High-impact tests covering:
- Authorization code exchange and refresh form encoding
- Client authentication modes
- Provider error responses versus transport failures
"""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from mcpbridge.auth.models.errors import ConfigError, TokenError
from mcpbridge.auth.models.tokens import RefreshTokenRequest, TokenRequest
from mcpbridge.auth.services.tokens import ClientAuthMethod, TokenExchanger

TOKEN_ENDPOINT = "https://acme.suitetalk.api.netsuite.com/services/rest/auth/oauth2/v1/token"


def make_response(status_code, payload):
    response = MagicMock()
    response.status_code = status_code
    if isinstance(payload, Exception):
        response.json.side_effect = payload
    else:
        response.json.return_value = payload
    return response


def make_token_request():
    return TokenRequest(
        token_endpoint=TOKEN_ENDPOINT,
        code="auth-code-123",
        redirect_uri="http://localhost:3000/callback",
        client_id="client-456",
        code_verifier="dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk",
    )


class TestExchangeCode:
    def setup_method(self):
        # Arrange
        self.exchanger = TokenExchanger()
        self.exchanger._http_client = AsyncMock()

    async def test_successful_exchange(self):
        # Arrange
        self.exchanger._http_client.post.return_value = make_response(
            200,
            {
                "access_token": "access-xyz",
                "token_type": "Bearer",
                "expires_in": 3600,
                "refresh_token": "refresh-abc",
            },
        )

        # Act
        token_response = await self.exchanger.exchange_code(make_token_request())

        # Assert
        assert token_response.is_success()
        assert token_response.access_token == "access-xyz"
        assert token_response.refresh_token == "refresh-abc"

        call = self.exchanger._http_client.post.call_args
        assert call.args[0] == TOKEN_ENDPOINT
        assert call.kwargs["data"] == {
            "grant_type": "authorization_code",
            "code": "auth-code-123",
            "redirect_uri": "http://localhost:3000/callback",
            "client_id": "client-456",
            "code_verifier": "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk",
        }
        assert call.kwargs["headers"]["Content-Type"] == (
            "application/x-www-form-urlencoded"
        )
        assert call.kwargs["auth"] is None

    async def test_provider_error_is_returned_not_raised(self):
        # Arrange
        self.exchanger._http_client.post.return_value = make_response(
            400,
            {"error": "invalid_grant", "error_description": "Code already used"},
        )

        # Act
        token_response = await self.exchanger.exchange_code(make_token_request())

        # Assert
        assert not token_response.is_success()
        assert token_response.error == "invalid_grant"
        assert token_response.error_description == "Code already used"

    async def test_non_json_error_body(self):
        # Arrange
        self.exchanger._http_client.post.return_value = make_response(
            502, ValueError("not json")
        )

        # Act
        token_response = await self.exchanger.exchange_code(make_token_request())

        # Assert
        assert token_response.error == "unknown_error"
        assert token_response.error_description == "HTTP 502"

    async def test_success_without_access_token_raises(self):
        # Arrange
        self.exchanger._http_client.post.return_value = make_response(
            200, {"token_type": "Bearer"}
        )

        # Act & Assert
        with pytest.raises(TokenError) as exc_info:
            await self.exchanger.exchange_code(make_token_request())
        assert exc_info.value.error_code == "invalid_response"

    async def test_network_failure_raises_token_error(self):
        # Arrange
        self.exchanger._http_client.post.side_effect = httpx.ConnectError("refused")

        # Act & Assert
        with pytest.raises(TokenError) as exc_info:
            await self.exchanger.exchange_code(make_token_request())
        assert exc_info.value.error_code == "request_failed"


class TestRefresh:
    async def test_refresh_form_data(self):
        # Arrange
        exchanger = TokenExchanger()
        exchanger._http_client = AsyncMock()
        exchanger._http_client.post.return_value = make_response(
            200, {"access_token": "new-access", "expires_in": 3600}
        )
        refresh_request = RefreshTokenRequest(
            token_endpoint=TOKEN_ENDPOINT,
            refresh_token="refresh-abc",
            client_id="client-456",
        )

        # Act
        token_response = await exchanger.refresh(refresh_request)

        # Assert
        assert token_response.access_token == "new-access"
        assert exchanger._http_client.post.call_args.kwargs["data"] == {
            "grant_type": "refresh_token",
            "refresh_token": "refresh-abc",
            "client_id": "client-456",
        }


class TestClientAuthentication:
    async def test_basic_auth_sends_credentials_in_header(self):
        # Arrange
        exchanger = TokenExchanger(
            auth_method=ClientAuthMethod.CLIENT_SECRET_BASIC, client_secret="s3cret"
        )
        exchanger._http_client = AsyncMock()
        exchanger._http_client.post.return_value = make_response(
            200, {"access_token": "access-xyz"}
        )

        # Act
        await exchanger.exchange_code(make_token_request())

        # Assert
        call = exchanger._http_client.post.call_args
        assert isinstance(call.kwargs["auth"], httpx.BasicAuth)
        assert "client_secret" not in call.kwargs["data"]

    def test_basic_auth_without_secret_is_config_error(self):
        with pytest.raises(ConfigError):
            TokenExchanger(auth_method=ClientAuthMethod.CLIENT_SECRET_BASIC)

    def test_accepts_method_by_name(self):
        exchanger = TokenExchanger(auth_method="client_secret_basic", client_secret="x")
        assert exchanger.auth_method is ClientAuthMethod.CLIENT_SECRET_BASIC
