from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt

from src.core.config import settings
from src.core.exceptions import AuthenticationError


def create_access_token(user_id: int, role: str) -> str:
    """Create JWT access token. Issuing tokens (login) lives outside the ledger."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "role": role,
        "type": "access",
        "exp": now + timedelta(minutes=settings.access_token_expire_minutes),
        "iat": now,
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str, token_type: str = "access") -> dict[str, Any]:
    """
    Decode and validate JWT token.

    Raises:
        AuthenticationError: If token is invalid, expired or of the wrong type
    """
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError as e:
        raise AuthenticationError(f"Invalid token: {str(e)}")

    if payload.get("type") != token_type:
        raise AuthenticationError(f"Invalid token type, expected {token_type}")

    return payload
