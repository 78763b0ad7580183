"""Authentication module (JWT bearer tokens).

Services:
    - TokenVerifier: verifies handshake tokens and yields an Identity.
    - create_access_token: mints tokens for local tooling and tests.
"""

from .service import TokenVerifier, create_access_token

__all__ = [
    "TokenVerifier",
    "create_access_token",
]
