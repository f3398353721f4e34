"""Bearer token verification. Tokens are issued by the external auth service."""

from jose import JWTError, jwt

from tradeledger.config import settings


def decode_access_token(token: str) -> str | None:
    """Decode JWT and return the subject (user id). Returns None on failure."""
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
        return payload.get("sub")
    except JWTError:
        return None
