"""HTTP front end: operator login flow and the client streaming endpoint."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from collections.abc import AsyncIterator

import uvicorn
from dotenv import load_dotenv
from starlette.applications import Starlette
from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.responses import (
    JSONResponse,
    PlainTextResponse,
    RedirectResponse,
    Response,
    StreamingResponse,
)
from starlette.routing import Route

from mcpbridge.auth.models.credentials import CredentialRecord
from mcpbridge.auth.models.errors import (
    ConfigError,
    CredentialStoreError,
    NotAuthenticated,
    OAuth2Error,
    RefreshError,
)
from mcpbridge.auth.services.flow import OAuthFlowController
from mcpbridge.auth.services.store import CredentialStore, FileCredentialStore
from mcpbridge.auth.services.tokens import TokenExchanger
from mcpbridge.bridge.bridge import ProcessBridge
from mcpbridge.bridge.environment import build_worker_environment
from mcpbridge.bridge.errors import InvalidPayload, SessionNotFound, SpawnError
from mcpbridge.config import BridgeSettings
from mcpbridge.server.responses import error_response

logger = logging.getLogger(__name__)

STREAM_PATH = "/stream"


class BridgeServer:
    """Starlette application wiring the flow controller and the bridge.

    Routes:
    - GET  /login     redirect to the authorization server
    - GET  /callback  authorization server redirect target
    - GET  /stream    open a session (event stream)
    - POST /stream    submit input to a session
    - GET  /status    credential and session status
    - POST /logout    delete the stored credential
    - GET  /health    liveness check
    """

    def __init__(
        self,
        settings: BridgeSettings,
        store: CredentialStore | None = None,
        controller: OAuthFlowController | None = None,
        bridge: ProcessBridge | None = None,
    ) -> None:
        """Initialize the server.

        Args:
            settings: Resolved runtime settings
            store: Credential store (a file store under ``sessions_dir`` by
                default). An injected controller must use this same store.
            controller: Flow controller (built on ``store`` by default)
            bridge: Process bridge (spawns ``worker_command`` by default)
        """
        self.settings = settings
        self.store = store or FileCredentialStore(settings.sessions_dir)
        self.controller = controller or OAuthFlowController(
            store=self.store,
            exchanger=TokenExchanger(
                auth_method=settings.client_auth_method,
                client_secret=settings.client_secret,
            ),
            refresh_margin=settings.refresh_margin,
            authorization_endpoint=settings.authorization_endpoint,
            token_endpoint=settings.token_endpoint,
        )
        self.bridge = bridge or ProcessBridge(
            command=list(settings.worker_command),
            environment_factory=self._worker_environment,
            endpoint_path=STREAM_PATH,
        )

        self.app = Starlette(
            routes=[
                Route("/", self._handle_status, methods=["GET"]),
                Route("/login", self._handle_login, methods=["GET"]),
                Route("/callback", self._handle_callback, methods=["GET"]),
                Route(STREAM_PATH, self._handle_stream_open, methods=["GET"]),
                Route(STREAM_PATH, self._handle_stream_input, methods=["POST"]),
                Route("/status", self._handle_status, methods=["GET"]),
                Route("/logout", self._handle_logout, methods=["POST"]),
                Route("/health", self._handle_health, methods=["GET"]),
            ],
            lifespan=self._lifespan,
        )

    @contextlib.asynccontextmanager
    async def _lifespan(self, app: Starlette) -> AsyncIterator[None]:
        logger.info(f"Bridge ready; worker command: {' '.join(self.bridge.command)}")
        try:
            yield
        finally:
            await self.bridge.close_all()
            await self.controller.close()
            logger.info("Bridge stopped")

    def _worker_environment(self, credential: CredentialRecord | None) -> dict[str, str]:
        account_id = self.settings.account_id
        credential_file = None
        if account_id and isinstance(self.store, FileCredentialStore):
            credential_file = self.store.path_for(account_id)
        return build_worker_environment(
            credential,
            account_id=account_id,
            client_id=self.settings.client_id,
            client_secret=self.settings.client_secret,
            credential_file=credential_file,
            base_env=os.environ,
            prefix=self.settings.worker_env_prefix,
        )

    # ================================
    # Authorization
    # ================================

    async def _handle_login(self, request: Request) -> Response:
        try:
            auth_url = await self.controller.start_auth(
                self.settings.account_id,
                self.settings.client_id,
                self.settings.redirect_uri,
                self.settings.scope,
            )
        except ConfigError as e:
            logger.error(f"Cannot start login: {e}")
            return error_response(e)

        return RedirectResponse(auth_url, status_code=302)

    async def _handle_callback(self, request: Request) -> Response:
        params = request.query_params
        try:
            record = await self.controller.handle_callback(
                state=params.get("state"),
                code=params.get("code"),
                error=params.get("error"),
                error_description=params.get("error_description"),
            )
        except OAuth2Error as e:
            logger.error(f"Authorization callback failed: {e}")
            return error_response(e)

        logger.info(f"Login complete for account {record.account_id}")
        return RedirectResponse(f"{self.settings.base_url}/?connected=true", status_code=302)

    async def _handle_logout(self, request: Request) -> Response:
        cleared = False
        if self.settings.account_id:
            try:
                cleared = await self.controller.clear_session(self.settings.account_id)
            except CredentialStoreError as e:
                logger.error(f"Cannot clear credential: {e}")
                return error_response(e)
        return JSONResponse({"connected": False, "cleared": cleared})

    async def _handle_status(self, request: Request) -> Response:
        record = None
        if self.settings.account_id:
            try:
                record = await self.controller.get_credential(self.settings.account_id)
            except CredentialStoreError as e:
                logger.error(f"Cannot read credential: {e}")
                return error_response(e)

        connected = record is not None and record.authenticated
        return JSONResponse(
            {
                "connected": connected,
                "accountId": record.account_id if record else None,
                "expiresAt": record.tokens.expires_at if record else None,
                "flowState": self.controller.flow_state.value,
                "failureReason": self.controller.failure_reason,
                "sessions": await self.bridge.registry.count(),
            }
        )

    async def _handle_health(self, request: Request) -> Response:
        return PlainTextResponse("OK")

    # ================================
    # Streaming
    # ================================

    async def _handle_stream_open(self, request: Request) -> Response:
        credential = None
        try:
            credential = await self.controller.ensure_valid_credential(
                self.settings.account_id or ""
            )
        except NotAuthenticated as e:
            logger.warning(
                f"{e}. Starting worker without tokens; authorize at "
                f"{self.settings.base_url}/login"
            )
        except (RefreshError, CredentialStoreError) as e:
            logger.error(f"Cannot open stream: {e}")
            return error_response(e)

        try:
            session = await self.bridge.open_session(credential)
        except (SpawnError, CredentialStoreError) as e:
            logger.error(f"Cannot open stream: {e}")
            return error_response(e)

        return StreamingResponse(
            session.stream.event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
            background=BackgroundTask(
                self.bridge.close_session, session.session_id, "client disconnected"
            ),
        )

    async def _handle_stream_input(self, request: Request) -> Response:
        session_id = request.query_params.get("sessionId")
        if not session_id:
            return JSONResponse(
                {
                    "error": "missing_session_id",
                    "message": "sessionId query parameter is required",
                    "remediation": "POST to the address announced by the endpoint event.",
                },
                status_code=400,
            )

        try:
            body = (await request.body()).decode("utf-8")
        except UnicodeDecodeError:
            return error_response(InvalidPayload("Payload is not valid UTF-8"))

        try:
            await self.bridge.submit_input(session_id, body)
        except (SessionNotFound, InvalidPayload) as e:
            logger.debug(f"Rejected input for session {session_id}: {e}")
            return error_response(e)

        return Response("Accepted", status_code=202)

    # ================================
    # Serving
    # ================================

    async def serve(self) -> None:
        """Run the HTTP server until it is asked to exit."""
        config = uvicorn.Config(
            app=self.app,
            host=self.settings.host,
            port=self.settings.port,
            log_level=self.settings.log_level.lower(),
        )
        server = uvicorn.Server(config)
        logger.info(f"HTTP server starting on {self.settings.host}:{self.settings.port}")
        await server.serve()


def main() -> None:
    load_dotenv()
    settings = BridgeSettings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    asyncio.run(BridgeServer(settings).serve())


if __name__ == "__main__":
    main()
