"""Tests for the authorization flow controller.

Covers the end-to-end authorization code flow, callback correlation and
the single-flight refresh of stored credentials.
"""

import asyncio
import time
from unittest.mock import AsyncMock, MagicMock
from urllib.parse import parse_qs, urlparse

import pytest

from mcpbridge.auth.models.credentials import CredentialRecord
from mcpbridge.auth.models.errors import (
    AuthorizationDenied,
    ConfigError,
    CredentialStoreError,
    CsrfMismatch,
    NotAuthenticated,
    RefreshError,
    TokenExchangeError,
)
from mcpbridge.auth.models.flow import FlowState
from mcpbridge.auth.models.tokens import TokenResponse, TokenSet
from mcpbridge.auth.primitives.pkce import derive_challenge
from mcpbridge.auth.services.flow import OAuthFlowController
from mcpbridge.auth.services.store import MemoryCredentialStore

REDIRECT_URI = "http://localhost:3000/callback"


def make_exchanger():
    exchanger = MagicMock()
    exchanger.exchange_code = AsyncMock(
        return_value=TokenResponse(
            access_token="access-1",
            refresh_token="refresh-1",
            expires_in=3600,
            scope="mcp",
        )
    )
    exchanger.refresh = AsyncMock()
    exchanger.close = AsyncMock()
    return exchanger


def make_record(expires_at, refresh_token="refresh-1"):
    return CredentialRecord(
        account_id="acme",
        client_id="client-1",
        redirect_uri=REDIRECT_URI,
        tokens=TokenSet(
            access_token="stale-access",
            refresh_token=refresh_token,
            expires_in=3600,
            expires_at=expires_at,
        ),
        authenticated=True,
    )


def query_of(url):
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


class TestStartAuth:
    def setup_method(self):
        self.controller = OAuthFlowController(MemoryCredentialStore(), make_exchanger())

    async def test_builds_netsuite_authorization_url(self):
        # Act
        url = await self.controller.start_auth("ACME", "client-1", REDIRECT_URI, "mcp")

        # Assert
        parsed = urlparse(url)
        assert parsed.netloc == "acme.app.netsuite.com"
        assert parsed.path == "/app/login/oauth2/authorize.nl"
        params = query_of(url)
        assert params["response_type"] == "code"
        assert params["client_id"] == "client-1"
        assert params["redirect_uri"] == REDIRECT_URI
        assert params["code_challenge_method"] == "S256"
        assert params["scope"] == "mcp"
        assert len(params["state"]) == 32
        assert self.controller.flow_state == FlowState.AWAITING_CALLBACK

    async def test_sandbox_account_domain_uses_hyphen(self):
        # Act
        url = await self.controller.start_auth(
            "1234567_SB1", "client-1", REDIRECT_URI
        )

        # Assert
        assert urlparse(url).netloc == "1234567-sb1.app.netsuite.com"
        assert "scope" not in query_of(url)

    async def test_every_attempt_gets_fresh_state_and_challenge(self):
        # Act
        first = query_of(await self.controller.start_auth("acme", "c", REDIRECT_URI))
        second = query_of(await self.controller.start_auth("acme", "c", REDIRECT_URI))

        # Assert
        assert first["state"] != second["state"]
        assert first["code_challenge"] != second["code_challenge"]

    async def test_missing_configuration_raises_config_error(self):
        with pytest.raises(ConfigError, match="account"):
            await self.controller.start_auth(None, "client-1", REDIRECT_URI)
        with pytest.raises(ConfigError, match="client"):
            await self.controller.start_auth("acme", None, REDIRECT_URI)
        assert self.controller.flow_state == FlowState.IDLE

    async def test_endpoint_overrides_are_used(self):
        # Arrange
        controller = OAuthFlowController(
            MemoryCredentialStore(),
            make_exchanger(),
            authorization_endpoint="https://auth.example.com/authorize",
            token_endpoint="https://auth.example.com/token",
        )

        # Act
        url = await controller.start_auth("acme", "client-1", REDIRECT_URI)

        # Assert
        assert url.startswith("https://auth.example.com/authorize?")


class TestHandleCallback:
    def setup_method(self):
        self.store = MemoryCredentialStore()
        self.exchanger = make_exchanger()
        self.controller = OAuthFlowController(self.store, self.exchanger)

    async def test_end_to_end_authorization(self):
        # Arrange
        url = await self.controller.start_auth("ACME", "client-1", REDIRECT_URI, "mcp")
        params = query_of(url)

        # Act
        record = await self.controller.handle_callback(params["state"], "code-1")

        # Assert
        assert record.account_id == "acme"
        assert record.authenticated
        assert record.tokens.access_token == "access-1"
        assert record.scope == "mcp"
        assert self.controller.flow_state == FlowState.AUTHENTICATED

        token_request = self.exchanger.exchange_code.call_args.args[0]
        assert token_request.code == "code-1"
        assert token_request.redirect_uri == REDIRECT_URI
        assert token_request.token_endpoint == (
            "https://acme.suitetalk.api.netsuite.com"
            "/services/rest/auth/oauth2/v1/token"
        )
        assert derive_challenge(token_request.code_verifier) == params["code_challenge"]

        stored = await self.store.get("acme")
        assert stored.tokens.access_token == "access-1"

    async def test_unknown_state_never_contacts_token_endpoint(self):
        # Arrange
        await self.controller.start_auth("acme", "client-1", REDIRECT_URI)

        # Act & Assert
        with pytest.raises(CsrfMismatch):
            await self.controller.handle_callback("forged-state", "code-1")
        self.exchanger.exchange_code.assert_not_awaited()
        assert await self.store.get("acme") is None

    async def test_replayed_callback_is_rejected(self):
        # Arrange
        url = await self.controller.start_auth("acme", "client-1", REDIRECT_URI)
        state = query_of(url)["state"]
        await self.controller.handle_callback(state, "code-1")

        # Act & Assert
        with pytest.raises(CsrfMismatch):
            await self.controller.handle_callback(state, "code-1")
        assert self.exchanger.exchange_code.await_count == 1

    async def test_provider_error_raises_authorization_denied(self):
        # Arrange
        url = await self.controller.start_auth("acme", "client-1", REDIRECT_URI)
        state = query_of(url)["state"]

        # Act & Assert
        with pytest.raises(AuthorizationDenied) as exc_info:
            await self.controller.handle_callback(
                state, None, error="access_denied", error_description="User said no"
            )
        assert exc_info.value.error == "access_denied"
        assert exc_info.value.error_description == "User said no"
        assert self.controller.flow_state == FlowState.FAILED
        self.exchanger.exchange_code.assert_not_awaited()

    async def test_rejected_code_fails_the_attempt(self):
        # Arrange
        self.exchanger.exchange_code.return_value = TokenResponse(
            error="invalid_grant", error_description="Code expired"
        )
        url = await self.controller.start_auth("acme", "client-1", REDIRECT_URI)

        # Act & Assert
        with pytest.raises(TokenExchangeError) as exc_info:
            await self.controller.handle_callback(query_of(url)["state"], "code-1")
        assert exc_info.value.error_code == "invalid_grant"
        assert self.controller.flow_state == FlowState.FAILED
        assert "invalid_grant" in self.controller.failure_reason
        assert await self.store.get("acme") is None

    async def test_verifier_is_cleared_after_exchange(self):
        # Arrange
        url = await self.controller.start_auth("acme", "client-1", REDIRECT_URI)

        # Act
        await self.controller.handle_callback(query_of(url)["state"], "code-1")

        # Assert
        assert self.controller._current.verifier is None

    async def test_forged_state_fails_the_pending_attempt(self):
        # Arrange
        url = await self.controller.start_auth("acme", "client-1", REDIRECT_URI)
        genuine_state = query_of(url)["state"]

        # Act
        with pytest.raises(CsrfMismatch):
            await self.controller.handle_callback("forged-state", "code-1")

        # Assert
        assert self.controller.flow_state == FlowState.FAILED
        assert self.controller.failure_reason == "state mismatch"
        with pytest.raises(CsrfMismatch):
            await self.controller.handle_callback(genuine_state, "code-1")
        self.exchanger.exchange_code.assert_not_awaited()

    async def test_replay_after_success_keeps_authenticated_state(self):
        # Arrange
        url = await self.controller.start_auth("acme", "client-1", REDIRECT_URI)
        state = query_of(url)["state"]
        await self.controller.handle_callback(state, "code-1")

        # Act
        with pytest.raises(CsrfMismatch):
            await self.controller.handle_callback(state, "code-1")

        # Assert
        assert self.controller.flow_state == FlowState.AUTHENTICATED

    async def test_store_failure_fails_the_attempt(self):
        # Arrange
        self.store.put = AsyncMock(side_effect=CredentialStoreError("disk full"))
        url = await self.controller.start_auth("acme", "client-1", REDIRECT_URI)

        # Act & Assert
        with pytest.raises(CredentialStoreError):
            await self.controller.handle_callback(query_of(url)["state"], "code-1")
        assert self.controller.flow_state == FlowState.FAILED
        assert self.controller.failure_reason == "credential could not be saved"
        assert self.controller._current.verifier is None


class TestEnsureValidToken:
    def setup_method(self):
        self.store = MemoryCredentialStore()
        self.exchanger = make_exchanger()
        self.controller = OAuthFlowController(
            self.store, self.exchanger, refresh_margin=300
        )

    async def test_fresh_token_is_returned_without_refresh(self):
        # Arrange
        await self.store.put(make_record(expires_at=time.time() + 3600))

        # Act
        token = await self.controller.ensure_valid_token("ACME")

        # Assert
        assert token == "stale-access"
        self.exchanger.refresh.assert_not_awaited()

    async def test_token_inside_margin_is_refreshed(self):
        # Arrange
        await self.store.put(make_record(expires_at=time.time() + 60))
        self.exchanger.refresh.return_value = TokenResponse(
            access_token="fresh-access", expires_in=3600
        )

        # Act
        token = await self.controller.ensure_valid_token("acme")

        # Assert
        assert token == "fresh-access"
        stored = await self.store.get("acme")
        assert stored.tokens.access_token == "fresh-access"
        # Provider did not rotate the refresh token; the old one is kept
        assert stored.tokens.refresh_token == "refresh-1"
        assert stored.tokens.expires_at > time.time() + 3000

    async def test_concurrent_callers_share_one_refresh(self):
        # Arrange
        await self.store.put(make_record(expires_at=time.time() + 10))

        async def slow_refresh(request):
            await asyncio.sleep(0.05)
            return TokenResponse(access_token="fresh-access", expires_in=3600)

        self.exchanger.refresh.side_effect = slow_refresh

        # Act
        tokens = await asyncio.gather(
            *(self.controller.ensure_valid_token("acme") for _ in range(5))
        )

        # Assert
        assert tokens == ["fresh-access"] * 5
        assert self.exchanger.refresh.await_count == 1

    async def test_concurrent_callers_share_one_failure(self):
        # Arrange
        await self.store.put(make_record(expires_at=time.time() + 10))

        async def failing_refresh(request):
            await asyncio.sleep(0.05)
            return TokenResponse(error="invalid_grant")

        self.exchanger.refresh.side_effect = failing_refresh

        # Act
        results = await asyncio.gather(
            *(self.controller.ensure_valid_token("acme") for _ in range(3)),
            return_exceptions=True,
        )

        # Assert
        assert all(isinstance(r, RefreshError) for r in results)
        assert self.exchanger.refresh.await_count == 1

    async def test_failed_refresh_keeps_stale_record(self):
        # Arrange
        await self.store.put(make_record(expires_at=time.time() + 10))
        self.exchanger.refresh.return_value = TokenResponse(
            error="invalid_grant", error_description="Refresh token revoked"
        )

        # Act & Assert
        with pytest.raises(RefreshError) as exc_info:
            await self.controller.ensure_valid_token("acme")
        assert exc_info.value.error_code == "invalid_grant"

        stored = await self.store.get("acme")
        assert stored.tokens.access_token == "stale-access"

    async def test_missing_refresh_token_raises(self):
        # Arrange
        await self.store.put(
            make_record(expires_at=time.time() - 10, refresh_token=None)
        )

        # Act & Assert
        with pytest.raises(RefreshError) as exc_info:
            await self.controller.ensure_valid_token("acme")
        assert exc_info.value.error_code == "missing_refresh_token"
        self.exchanger.refresh.assert_not_awaited()

    async def test_no_credential_raises_not_authenticated(self):
        with pytest.raises(NotAuthenticated):
            await self.controller.ensure_valid_token("acme")

    async def test_refresh_token_unconditionally(self):
        # Arrange
        record = make_record(expires_at=time.time() + 3600)
        await self.store.put(record)
        self.exchanger.refresh.return_value = TokenResponse(
            access_token="fresh-access", refresh_token="refresh-2", expires_in=3600
        )

        # Act
        refreshed = await self.controller.refresh_token(record)

        # Assert
        assert refreshed.tokens.refresh_token == "refresh-2"
        assert (await self.store.get("acme")).tokens.access_token == "fresh-access"


class TestClearSession:
    async def test_clear_session_is_idempotent(self):
        # Arrange
        store = MemoryCredentialStore()
        controller = OAuthFlowController(store, make_exchanger())
        await store.put(make_record(expires_at=time.time() + 3600))

        # Act & Assert
        assert await controller.clear_session("ACME") is True
        assert await controller.clear_session("ACME") is False
        with pytest.raises(NotAuthenticated):
            await controller.ensure_valid_token("acme")

    async def test_close_closes_exchanger(self):
        # Arrange
        exchanger = make_exchanger()
        controller = OAuthFlowController(MemoryCredentialStore(), exchanger)

        # Act
        await controller.close()

        # Assert
        exchanger.close.assert_awaited_once()
