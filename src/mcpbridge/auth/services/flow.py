"""OAuth 2.0 authorization flow controller.

Coordinates the authorization code + PKCE flow (authorization URL, CSRF
state correlation, code exchange) and the lazy refresh of the persisted
credential that worker processes run with.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from mcpbridge.auth.models.credentials import CredentialRecord, normalize_account_id
from mcpbridge.auth.models.endpoints import AuthorizationServerEndpoints
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
from mcpbridge.auth.models.flow import (
    AuthorizationAttempt,
    AuthorizationRequest,
    FlowState,
)
from mcpbridge.auth.models.tokens import RefreshTokenRequest, TokenRequest
from mcpbridge.auth.primitives.pkce import generate_pair
from mcpbridge.auth.services.attempts import AttemptStore
from mcpbridge.auth.services.security import generate_state
from mcpbridge.auth.services.store import CredentialStore
from mcpbridge.auth.services.tokens import TokenExchanger

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_MARGIN = 300.0


@dataclass
class _RefreshSlot:
    """Serializes refreshes for one account.

    ``generation`` advances every time a refresh finishes, so a caller that
    queued behind a refresh can tell it should reuse that outcome instead
    of calling the token endpoint again.
    """

    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    generation: int = 0
    last_error: OAuth2Error | None = None


class OAuthFlowController:
    """Drives authorization attempts and keeps credentials fresh.

    Handles:
    - Authorization URL construction with S256 PKCE and CSRF state
    - Single-use callback correlation
    - Authorization code exchange and credential persistence
    - Read-time refresh inside the refresh margin, at most one in flight
      per account
    """

    def __init__(
        self,
        store: CredentialStore,
        exchanger: TokenExchanger,
        attempts: AttemptStore | None = None,
        refresh_margin: float = DEFAULT_REFRESH_MARGIN,
        authorization_endpoint: str | None = None,
        token_endpoint: str | None = None,
    ):
        """Initialize the flow controller.

        Args:
            store: Credential persistence
            exchanger: Token endpoint client
            attempts: Pending attempt table (a fresh one by default)
            refresh_margin: Refresh this many seconds before expiry
            authorization_endpoint: Override for the derived endpoint
            token_endpoint: Override for the derived endpoint
        """
        self._store = store
        self._exchanger = exchanger
        self._attempts = attempts if attempts is not None else AttemptStore()
        self.refresh_margin = refresh_margin
        self._authorization_endpoint = authorization_endpoint
        self._token_endpoint = token_endpoint
        self._refresh_slots: dict[str, _RefreshSlot] = {}
        self._current: AuthorizationAttempt | None = None

    @property
    def flow_state(self) -> FlowState:
        """State of the most recent authorization attempt."""
        if self._current is None:
            return FlowState.IDLE
        return self._current.status

    @property
    def failure_reason(self) -> str | None:
        if self._current is None:
            return None
        return self._current.failure_reason

    # ================================
    # Authorization
    # ================================

    async def start_auth(
        self,
        account_id: str | None,
        client_id: str | None,
        redirect_uri: str,
        scope: str | None = None,
    ) -> str:
        """Start an authorization attempt and return the URL to visit.

        Raises:
            ConfigError: If the account id, client id or redirect URI is missing
        """
        if not account_id or not account_id.strip():
            raise ConfigError("Missing account id; set NETSUITE_ACCOUNT_ID")
        if not client_id:
            raise ConfigError("Missing client id; set NETSUITE_CLIENT_ID")
        if not redirect_uri:
            raise ConfigError("Missing redirect URI; set APP_BASE_URL")

        endpoints = self._endpoints_for(account_id)
        pkce = generate_pair()
        state = generate_state()

        attempt = AuthorizationAttempt(
            state=state,
            verifier=pkce.verifier,
            account_id=normalize_account_id(account_id),
            client_id=client_id,
            redirect_uri=redirect_uri,
            scope=scope,
        )
        self._attempts.add(attempt)
        self._current = attempt

        auth_request = AuthorizationRequest(
            authorization_endpoint=endpoints.authorization_endpoint,
            client_id=client_id,
            redirect_uri=redirect_uri,
            code_challenge=pkce.challenge,
            code_challenge_method=pkce.method,
            state=state,
            scope=scope,
        )

        logger.info(
            f"Started authorization for account {attempt.account_id} "
            f"via {endpoints.authorization_endpoint}"
        )
        return auth_request.build_authorization_url()

    async def handle_callback(
        self,
        state: str | None,
        code: str | None,
        error: str | None = None,
        error_description: str | None = None,
    ) -> CredentialRecord:
        """Process the authorization server redirect.

        Raises:
            AuthorizationDenied: If the provider returned an error
            CsrfMismatch: If the state matches no pending attempt
            AuthorizationCallbackError: If the code is missing
            TokenExchangeError: If the provider rejects the code
            CredentialStoreError: If the credential cannot be saved
        """
        if error:
            attempt = self._attempts.discard(state)
            if attempt is not None:
                attempt.fail(f"authorization denied: {error}")
            logger.warning(
                f"Authorization callback contained error: {error} - "
                f"{error_description}"
            )
            raise AuthorizationDenied(error, error_description)

        try:
            attempt = self._attempts.consume(state)
        except CsrfMismatch:
            logger.warning("Rejected authorization callback with unknown state")
            self._fail_current("state mismatch")
            raise

        if not code:
            attempt.fail("missing authorization code")
            raise AuthorizationCallbackError(
                "Authorization server callback missing authorization code"
            )

        return await self.exchange_code(code, attempt)

    async def exchange_code(
        self, code: str, attempt: AuthorizationAttempt
    ) -> CredentialRecord:
        """Exchange an authorization code and persist the credential.

        The attempt is spent whether or not the exchange succeeds:
        authorization codes are single-use.

        Raises:
            AuthorizationCallbackError: If the attempt was already used
            TokenExchangeError: If the provider rejects the request
            CredentialStoreError: If the credential cannot be saved
        """
        if attempt.verifier is None:
            raise AuthorizationCallbackError("Authorization attempt already used")

        attempt.status = FlowState.EXCHANGING
        endpoints = self._endpoints_for(attempt.account_id)
        token_request = TokenRequest(
            token_endpoint=endpoints.token_endpoint,
            code=code,
            redirect_uri=attempt.redirect_uri,
            client_id=attempt.client_id,
            code_verifier=attempt.verifier,
        )

        try:
            token_response = await self._exchanger.exchange_code(token_request)
        except TokenError as e:
            attempt.fail(f"token exchange failed: {e.error_code}")
            raise TokenExchangeError(
                f"Token exchange failed: {e}",
                error_code=e.error_code,
                error_description=e.error_description,
            ) from e

        if not token_response.is_success():
            error_code = token_response.error or "unknown_error"
            attempt.fail(f"token exchange failed: {error_code}")
            raise TokenExchangeError(
                f"Token exchange failed: {error_code}",
                error_code=error_code,
                error_description=token_response.error_description,
            )

        record = CredentialRecord(
            account_id=attempt.account_id,
            client_id=attempt.client_id,
            redirect_uri=attempt.redirect_uri,
            scope=token_response.scope or attempt.scope,
            tokens=token_response.to_token_set(),
            authenticated=True,
        )
        attempt.verifier = None

        slot = self._slot(record.account_id)
        try:
            async with slot.lock:
                await self._store.put(record)
        except CredentialStoreError as e:
            attempt.fail("credential could not be saved")
            logger.error(f"Cannot save credential for {record.account_id}: {e}")
            raise

        attempt.status = FlowState.AUTHENTICATED
        logger.info(f"Account {record.account_id} authenticated")
        return record

    # ================================
    # Token lifecycle
    # ================================

    async def ensure_valid_token(self, account_id: str) -> str:
        """Return a usable access token, refreshing it first if needed.

        Raises:
            NotAuthenticated: If no credential is on file
            RefreshError: If a needed refresh fails
        """
        record = await self.ensure_valid_credential(account_id)
        return record.tokens.access_token

    async def ensure_valid_credential(self, account_id: str) -> CredentialRecord:
        """Return the credential record, refreshed if inside the margin.

        Concurrent callers for one account share a single refresh.

        Raises:
            NotAuthenticated: If no credential is on file
            RefreshError: If a needed refresh fails
            CredentialStoreError: If the store cannot be read or written
        """
        key = normalize_account_id(account_id or "")
        record = await self._load(key)
        if not record.tokens.needs_refresh(self.refresh_margin):
            return record

        slot = self._slot(key)
        seen_generation = slot.generation
        async with slot.lock:
            if slot.generation != seen_generation:
                # A refresh completed while we waited; reuse its outcome
                if slot.last_error is not None:
                    raise slot.last_error
                return await self._load(key)

            record = await self._load(key)
            if not record.tokens.needs_refresh(self.refresh_margin):
                return record
            logger.info(f"Access token for {key} is expiring soon, refreshing")
            return await self._refresh_locked(record, slot)

    async def refresh_token(self, record: CredentialRecord) -> CredentialRecord:
        """Refresh ``record`` unconditionally.

        Raises:
            RefreshError: If the provider rejects the refresh; the stale
                record stays in the store
        """
        slot = self._slot(record.account_id)
        async with slot.lock:
            return await self._refresh_locked(record, slot)

    async def clear_session(self, account_id: str) -> bool:
        """Delete the credential record (logout). Idempotent."""
        key = normalize_account_id(account_id or "")
        if not key:
            return False
        slot = self._slot(key)
        async with slot.lock:
            deleted = await self._store.delete(key)
        if self._current is not None and self._current.account_id == key:
            self._current = None
        logger.info(f"Cleared credential for account {key}")
        return deleted

    async def get_credential(self, account_id: str) -> CredentialRecord | None:
        key = normalize_account_id(account_id or "")
        if not key:
            return None
        return await self._store.get(key)

    async def close(self) -> None:
        await self._exchanger.close()

    # ================================
    # Internals
    # ================================

    async def _load(self, key: str) -> CredentialRecord:
        if not key:
            raise NotAuthenticated("No account id configured")
        record = await self._store.get(key)
        if record is None or not record.authenticated:
            raise NotAuthenticated(
                f"No credential on file for account {key}; run the login flow"
            )
        return record

    async def _refresh_locked(
        self, record: CredentialRecord, slot: _RefreshSlot
    ) -> CredentialRecord:
        try:
            refreshed = await self._refresh(record)
        except OAuth2Error as e:
            slot.last_error = e
            raise
        else:
            slot.last_error = None
            return refreshed
        finally:
            slot.generation += 1

    async def _refresh(self, record: CredentialRecord) -> CredentialRecord:
        if not record.tokens.can_refresh():
            raise RefreshError(
                "No refresh token on file; re-authorization required",
                error_code="missing_refresh_token",
            )

        endpoints = self._endpoints_for(record.account_id)
        refresh_request = RefreshTokenRequest(
            token_endpoint=endpoints.token_endpoint,
            refresh_token=record.tokens.refresh_token,
            client_id=record.client_id,
        )

        try:
            token_response = await self._exchanger.refresh(refresh_request)
        except TokenError as e:
            raise RefreshError(
                f"Token refresh failed: {e}",
                error_code=e.error_code,
                error_description=e.error_description,
            ) from e

        if not token_response.is_success():
            error_code = token_response.error or "unknown_error"
            logger.error(f"Token refresh failed for {record.account_id}: {error_code}")
            raise RefreshError(
                f"Token refresh failed: {error_code}",
                error_code=error_code,
                error_description=token_response.error_description,
            )

        record.replace_tokens(token_response.to_token_set(previous=record.tokens))
        await self._store.put(record)
        logger.info(f"Refreshed access token for {record.account_id}")
        return record

    def _fail_current(self, reason: str) -> None:
        """Fail and discard the attempt still waiting for its callback, if any."""
        current = self._current
        if current is None or current.status is not FlowState.AWAITING_CALLBACK:
            return
        self._attempts.discard(current.state)
        current.fail(reason)

    def _slot(self, key: str) -> _RefreshSlot:
        return self._refresh_slots.setdefault(key, _RefreshSlot())

    def _endpoints_for(self, account_id: str) -> AuthorizationServerEndpoints:
        return AuthorizationServerEndpoints.resolve(
            account_id,
            authorization_endpoint=self._authorization_endpoint,
            token_endpoint=self._token_endpoint,
        )
