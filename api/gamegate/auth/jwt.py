"""JWT token creation and validation for platform sessions.

Wallet-signature login happens upstream; by the time a request reaches this
service the session is a bearer token carrying the user id and roles.
"""

from datetime import datetime, timedelta, timezone

from jose import jwt

from gamegate.config import settings


def create_access_token(
    user_id: str,
    roles: list[str] | None = None,
    secret: str | None = None,
) -> str:
    """Create a short-lived access token (15 minutes by default)."""
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.access_token_expire_minutes)
    payload = {
        "sub": user_id,
        "exp": expire,
        "type": "access",
        "roles": roles or [],
    }
    return jwt.encode(payload, secret or settings.jwt_secret, algorithm="HS256")


def decode_token(token: str, secret: str | None = None) -> dict | None:
    """
    Decode and validate a JWT token.

    Returns the payload if valid, None if invalid or expired.
    """
    try:
        payload = jwt.decode(token, secret or settings.jwt_secret, algorithms=["HS256"])
        return payload
    except jwt.JWTError:
        return None


def bearer_token(authorization: str | None) -> str | None:
    """Extract the token from an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()
