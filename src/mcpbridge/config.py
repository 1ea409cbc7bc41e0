"""Runtime settings loaded from the environment.

Call ``load_dotenv()`` before ``BridgeSettings.from_env()`` to pick up a
local ``.env`` file.
"""

from __future__ import annotations

import os
import shlex
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from mcpbridge.auth.models.errors import ConfigError
from mcpbridge.auth.services.tokens import ClientAuthMethod

DEFAULT_WORKER_COMMAND = "npx @suiteinsider/netsuite-mcp@latest"


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e
    if value < 0:
        raise ConfigError(f"{name} must not be negative, got {raw!r}")
    return value


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from e


def _optional(env: Mapping[str, str], name: str) -> str | None:
    value = env.get(name, "").strip()
    return value or None


@dataclass(frozen=True)
class BridgeSettings:
    """Everything the server needs, resolved once at start-up.

    Account and client ids may be missing here: the login route reports
    that as a configuration error instead of refusing to start.
    """

    account_id: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    client_auth_method: ClientAuthMethod = ClientAuthMethod.NONE
    base_url: str = "http://localhost:3000"
    scope: str = "mcp"
    refresh_margin: float = 300.0
    authorization_endpoint: str | None = None
    token_endpoint: str | None = None
    sessions_dir: Path = Path("sessions")
    worker_command: tuple[str, ...] = tuple(shlex.split(DEFAULT_WORKER_COMMAND))
    worker_env_prefix: str = "NETSUITE"
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"

    @property
    def redirect_uri(self) -> str:
        return f"{self.base_url}/callback"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> BridgeSettings:
        """Build settings from environment variables.

        Raises:
            ConfigError: If a value is malformed or the client authentication
                mode is inconsistent with the configured secret
        """
        env = os.environ if env is None else env

        auth_method_raw = env.get("OAUTH_CLIENT_AUTH_METHOD", "none").strip().lower()
        try:
            auth_method = ClientAuthMethod(auth_method_raw or "none")
        except ValueError as e:
            choices = ", ".join(m.value for m in ClientAuthMethod)
            raise ConfigError(
                f"OAUTH_CLIENT_AUTH_METHOD must be one of: {choices}"
            ) from e

        client_secret = _optional(env, "NETSUITE_CLIENT_SECRET")
        if auth_method is ClientAuthMethod.CLIENT_SECRET_BASIC and not client_secret:
            raise ConfigError(
                "OAUTH_CLIENT_AUTH_METHOD=client_secret_basic requires "
                "NETSUITE_CLIENT_SECRET"
            )

        worker_command = tuple(
            shlex.split(env.get("WORKER_COMMAND") or DEFAULT_WORKER_COMMAND)
        )
        if not worker_command:
            raise ConfigError("WORKER_COMMAND must not be empty")

        return cls(
            account_id=_optional(env, "NETSUITE_ACCOUNT_ID"),
            client_id=_optional(env, "NETSUITE_CLIENT_ID"),
            client_secret=client_secret,
            client_auth_method=auth_method,
            base_url=(env.get("APP_BASE_URL") or "http://localhost:3000").rstrip("/"),
            scope=_optional(env, "NETSUITE_SCOPE") or "mcp",
            refresh_margin=_float(env, "TOKEN_REFRESH_MARGIN", 300.0),
            authorization_endpoint=_optional(env, "OAUTH_AUTHORIZATION_ENDPOINT"),
            token_endpoint=_optional(env, "OAUTH_TOKEN_ENDPOINT"),
            sessions_dir=Path(env.get("SESSIONS_DIR") or "sessions"),
            worker_command=worker_command,
            worker_env_prefix=_optional(env, "WORKER_ENV_PREFIX") or "NETSUITE",
            host=env.get("HOST") or "0.0.0.0",
            port=_int(env, "PORT", 3000),
            log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
        )
