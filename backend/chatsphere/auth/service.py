"""JWT identity verification for WebSocket handshakes.

Tokens are HS256 JWTs issued by the account service. The relay only verifies
them; it never stores credentials.

Claims:
    sub:  user id (required)
    name: display name (optional, defaults to ``sub``)
    exp:  expiry (required)
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from jwt import ExpiredSignatureError, InvalidTokenError

from chatsphere.relay.errors import AuthError
from chatsphere.relay.schemas import Identity

logger = logging.getLogger(__name__)


class TokenVerifier:
    """Verifies bearer tokens and turns their claims into an Identity."""

    def __init__(self, secret_key: str, algorithm: str = "HS256") -> None:
        self.secret_key = secret_key
        self.algorithm = algorithm

    def verify(self, token: Optional[str]) -> Identity:
        """Verify a token.

        Raises:
            AuthError: With reason "missing token", "expired token" or
                "invalid token".
        """
        if not token:
            raise AuthError("missing token")
        try:
            claims = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
                options={"require": ["exp", "sub"]},
            )
        except ExpiredSignatureError:
            raise AuthError("expired token")
        except InvalidTokenError as e:
            logger.debug(f"Rejected token: {e}")
            raise AuthError("invalid token")

        user_id = str(claims["sub"]).strip()
        if not user_id:
            raise AuthError("invalid token")
        display_name = str(claims.get("name") or user_id).strip() or user_id
        return Identity(user_id=user_id, display_name=display_name)


def create_access_token(
    user_id: str,
    secret_key: str,
    display_name: Optional[str] = None,
    algorithm: str = "HS256",
    expires_minutes: int = 60,
) -> str:
    """Mint a token in the format ``TokenVerifier`` accepts.

    Used by local tooling and tests; production tokens come from the account
    service.
    """
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "iat": now,
        "exp": now + timedelta(minutes=expires_minutes),
    }
    if display_name:
        payload["name"] = display_name
    return jwt.encode(payload, secret_key, algorithm=algorithm)
