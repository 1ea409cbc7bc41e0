"""PKCE (Proof Key for Code Exchange) generation.

Implements RFC 7636 S256 parameter generation to prevent authorization
code interception attacks. The "plain" method is deliberately absent:
the authorization server requires S256.
"""

from __future__ import annotations

import base64
import hashlib
import secrets

from mcpbridge.auth.models.errors import PKCEError
from mcpbridge.auth.models.security import PKCEPair

VERIFIER_BYTES = 32


def _base64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def generate_verifier() -> str:
    """Generate a cryptographically secure code verifier.

    256 bits from the operating system CSPRNG, base64url-encoded without
    padding, which yields 43 characters from the RFC 7636 unreserved set.

    Raises:
        PKCEError: If secure randomness is unavailable
    """
    try:
        return _base64url(secrets.token_bytes(VERIFIER_BYTES))
    except NotImplementedError as e:
        raise PKCEError(f"Secure randomness unavailable: {e}") from e


def derive_challenge(verifier: str) -> str:
    """Derive the S256 code challenge for a verifier.

    RFC 7636 Section 4.2: BASE64URL-ENCODE(SHA256(ASCII(code_verifier)))
    """
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return _base64url(digest)


def generate_pair() -> PKCEPair:
    """Generate a fresh verifier/challenge pair for one authorization attempt."""
    verifier = generate_verifier()
    return PKCEPair(
        verifier=verifier,
        challenge=derive_challenge(verifier),
        method="S256",
    )
