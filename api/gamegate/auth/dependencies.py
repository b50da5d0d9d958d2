"""Authentication dependencies for FastAPI endpoints."""

from dataclasses import dataclass

from fastapi import Header, HTTPException, Request, status

from gamegate.auth.jwt import bearer_token, decode_token
from gamegate.ratelimit.identity import tier_for_roles
from gamegate.ratelimit.types import Tier


@dataclass(frozen=True)
class Principal:
    """Authenticated caller, as carried by the bearer token."""

    user_id: str
    roles: tuple[str, ...]

    @property
    def tier(self) -> Tier:
        return tier_for_roles(self.roles)


def _unauthorized(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={
            "error": {
                "code": "UNAUTHORIZED",
                "message": message,
            }
        },
    )


async def get_current_principal(
    request: Request,
    authorization: str | None = Header(default=None),
) -> Principal:
    """
    Validate the bearer token and return the caller.

    Raises:
        HTTPException: 401 if the token is missing, invalid, or expired
    """
    token = bearer_token(authorization)
    if token is None:
        raise _unauthorized("Bearer token required")

    payload = decode_token(token)
    if not payload or payload.get("type") != "access" or not payload.get("sub"):
        raise _unauthorized("Invalid or expired token")

    roles = payload.get("roles") or []
    if not isinstance(roles, list):
        roles = []

    principal = Principal(user_id=str(payload["sub"]), roles=tuple(str(r) for r in roles))
    request.state.principal = principal
    return principal


async def require_admin(request: Request, authorization: str | None = Header(default=None)) -> Principal:
    """
    Require the authenticated caller to be Admin tier.

    Raises:
        HTTPException: 401 if unauthenticated, 403 if not an admin
    """
    principal = await get_current_principal(request, authorization)
    if principal.tier < Tier.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "error": {
                    "code": "FORBIDDEN",
                    "message": "Admin access required",
                }
            },
        )
    return principal
