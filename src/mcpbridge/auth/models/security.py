"""Security-related models for OAuth 2.0 authentication.

Contains the PKCE pair generated fresh for every authorization attempt.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class PKCEPair:
    """PKCE (Proof Key for Code Exchange) pair for one authorization attempt.

    Immutable; the verifier is dropped as soon as tokens are obtained
    (RFC 7636).
    """

    verifier: str = field(repr=False)
    challenge: str = field()
    method: str = field(default="S256")

    def __post_init__(self) -> None:
        """Validate PKCE parameters meet RFC 7636 requirements."""
        if not (43 <= len(self.verifier) <= 128):
            raise ValueError("code_verifier must be 43-128 characters")
        if not (43 <= len(self.challenge) <= 128):
            raise ValueError("code_challenge must be 43-128 characters")
        if self.method != "S256":
            raise ValueError("Only S256 code challenge method is supported")
