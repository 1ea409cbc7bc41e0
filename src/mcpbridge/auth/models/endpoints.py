"""Authorization server endpoint resolution.

NetSuite hosts the authorization and token endpoints on per-account
domains; both can be overridden for other providers or sandboxes.
"""

from __future__ import annotations

from dataclasses import dataclass

from mcpbridge.auth.models.errors import ConfigError

AUTHORIZE_TEMPLATE = "https://{domain}.app.netsuite.com/app/login/oauth2/authorize.nl"
TOKEN_TEMPLATE = (
    "https://{domain}.suitetalk.api.netsuite.com/services/rest/auth/oauth2/v1/token"
)


def account_domain(account_id: str) -> str:
    """Account id as it appears in NetSuite host names.

    Lowercase, with every underscore replaced by a hyphen
    (``1234567_SB1`` -> ``1234567-sb1``).
    """
    return account_id.strip().lower().replace("_", "-")


@dataclass(frozen=True)
class AuthorizationServerEndpoints:
    authorization_endpoint: str
    token_endpoint: str

    @classmethod
    def resolve(
        cls,
        account_id: str | None,
        authorization_endpoint: str | None = None,
        token_endpoint: str | None = None,
    ) -> AuthorizationServerEndpoints:
        """Build endpoints from explicit overrides or the account id.

        Raises:
            ConfigError: If an endpoint has no override and no account id
        """
        if not (authorization_endpoint and token_endpoint) and not account_id:
            raise ConfigError(
                "Account id is required to derive the authorization server endpoints"
            )

        domain = account_domain(account_id) if account_id else ""
        return cls(
            authorization_endpoint=authorization_endpoint
            or AUTHORIZE_TEMPLATE.format(domain=domain),
            token_endpoint=token_endpoint or TOKEN_TEMPLATE.format(domain=domain),
        )
