"""Authentication utilities for the GameGate API."""

from gamegate.auth.jwt import bearer_token, create_access_token, decode_token

__all__ = [
    "bearer_token",
    "create_access_token",
    "decode_token",
]
