"""Security utilities for OAuth 2.0 flows.

Provides cryptographically secure CSRF state generation and constant-time
comparison.
"""

from __future__ import annotations

import secrets
import string


def generate_state() -> str:
    """Generate cryptographically secure state parameter.

    The state parameter provides CSRF protection by ensuring the callback
    matches the original authorization request.

    Returns:
        Cryptographically secure random state string (32 characters)
    """
    alphabet = string.ascii_letters + string.digits + "-._~"
    return "".join(secrets.choice(alphabet) for _ in range(32))


def state_matches(expected: str, actual: str | None) -> bool:
    """Compare a stored state with the one returned by the callback."""
    if actual is None:
        return False
    return secrets.compare_digest(expected.encode(), actual.encode())
