"""Credential record model.

One record per account identifier. The identifier is normalized inside the
model so a record can never be addressed under two casings.
"""

from __future__ import annotations

import time

from pydantic import BaseModel, ConfigDict, Field, field_validator

from mcpbridge.auth.models.tokens import TokenSet


def normalize_account_id(account_id: str) -> str:
    """Canonical form of an account identifier (storage key)."""
    return account_id.strip().lower()


class CredentialRecord(BaseModel):
    """Persisted OAuth credential for one account.

    Serialized with camelCase keys (``accountId``, ``clientId`` ...) to keep
    the on-disk layout readable by workers that load it directly.
    """

    model_config = ConfigDict(populate_by_name=True)

    account_id: str = Field(alias="accountId")
    client_id: str = Field(alias="clientId")
    redirect_uri: str | None = Field(default=None, alias="redirectUri")
    scope: str | None = None
    tokens: TokenSet
    authenticated: bool = False
    timestamp: float = Field(default_factory=time.time)

    @field_validator("account_id")
    @classmethod
    def normalize(cls, v: str) -> str:
        normalized = normalize_account_id(v)
        if not normalized:
            raise ValueError("accountId must not be empty")
        return normalized

    def replace_tokens(self, tokens: TokenSet) -> None:
        """Swap in refreshed tokens and bump the timestamp."""
        self.tokens = tokens
        self.timestamp = time.time()

    def to_storage(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")
