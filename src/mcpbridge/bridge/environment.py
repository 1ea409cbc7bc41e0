"""Worker environment construction.

A pure mapping from a credential snapshot to the environment variables a
worker process starts with. Nothing here touches the filesystem or spawns
anything.
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path

from mcpbridge.auth.models.credentials import CredentialRecord

DEFAULT_ENV_PREFIX = "NETSUITE"


def build_worker_environment(
    credential: CredentialRecord | None,
    *,
    account_id: str | None,
    client_id: str | None,
    client_secret: str | None = None,
    credential_file: str | Path | None = None,
    base_env: Mapping[str, str] | None = None,
    prefix: str = DEFAULT_ENV_PREFIX,
) -> dict[str, str]:
    """Build the environment for one worker process.

    Args:
        credential: Current credential, or None when nothing is on file
        account_id: Configured account id (used when there is no credential)
        client_id: Configured client id (used when there is no credential)
        client_secret: Passed through for workers that refresh on their own
        credential_file: Location of the canonical credential file, exported
            as ``<PREFIX>_SESSION_FILE`` only when a credential exists
        base_env: Inherited environment (the parent's, typically)
        prefix: Variable name prefix

    Returns:
        New dict; ``base_env`` is never modified.
    """
    env = dict(base_env or {})

    # Token variables come only from the credential, never from base_env
    for suffix in ("ACCESS_TOKEN", "REFRESH_TOKEN", "TOKEN_EXPIRES_AT", "SESSION_FILE"):
        env.pop(f"{prefix}_{suffix}", None)

    if credential is not None:
        account_id = credential.account_id
        client_id = credential.client_id

    if account_id:
        env[f"{prefix}_ACCOUNT_ID"] = account_id
    if client_id:
        env[f"{prefix}_CLIENT_ID"] = client_id
    if client_secret:
        env[f"{prefix}_CLIENT_SECRET"] = client_secret

    if credential is None:
        return env

    tokens = credential.tokens
    env[f"{prefix}_ACCESS_TOKEN"] = tokens.access_token
    if tokens.refresh_token:
        env[f"{prefix}_REFRESH_TOKEN"] = tokens.refresh_token
    if tokens.expires_at is not None:
        env[f"{prefix}_TOKEN_EXPIRES_AT"] = str(int(tokens.expires_at))
    if credential_file is not None:
        env[f"{prefix}_SESSION_FILE"] = str(credential_file)

    return env
