"""
Identity and tier resolution.

Precedence:
1) a principal placed on the request state by an upstream authenticator
2) a valid bearer token
3) the client IP, normalized so IPv6 address rotation inside one prefix
   cannot mint fresh quota
"""

import ipaddress
import logging
from collections.abc import Iterable, Mapping
from typing import Any

from gamegate.auth.jwt import bearer_token, decode_token
from gamegate.ratelimit.types import Identity, Tier

logger = logging.getLogger(__name__)

# Highest matching role wins
ROLE_TIERS: tuple[tuple[str, Tier], ...] = (
    ("admin", Tier.ADMIN),
    ("moderator", Tier.MODERATOR),
    ("tournament", Tier.TOURNAMENT),
    ("vip", Tier.VIP),
    ("clan_leader", Tier.CLAN_LEADER),
    ("premium", Tier.PREMIUM),
)

UNKNOWN_IP = "unknown"

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


def tier_for_roles(roles: Iterable[str]) -> Tier:
    """Map a user's roles onto the highest tier they qualify for."""
    role_set = {str(r).lower() for r in roles}
    for role, tier in ROLE_TIERS:
        if role in role_set:
            return tier
    return Tier.REGISTERED


def normalize_ip(raw: str | None, ipv6_prefix_length: int = 64) -> str:
    """IPv4 addresses are kept exact; IPv6 addresses collapse to their prefix."""
    if not raw:
        return UNKNOWN_IP
    try:
        address = ipaddress.ip_address(raw.strip())
    except ValueError:
        return UNKNOWN_IP
    if isinstance(address, ipaddress.IPv6Address):
        if address.ipv4_mapped is not None:
            return str(address.ipv4_mapped)
        network = ipaddress.IPv6Network((address, ipv6_prefix_length), strict=False)
        return f"{network.network_address}/{ipv6_prefix_length}"
    return str(address)


def parse_networks(cidrs: Iterable[str]) -> tuple[IPNetwork, ...]:
    """Parse trusted proxy CIDRs. Invalid entries are configuration errors."""
    return tuple(ipaddress.ip_network(c, strict=False) for c in cidrs)


class IdentityResolver:
    """Maps a request onto ``(principal key, tier)``."""

    def __init__(
        self,
        trusted_proxies: Iterable[str] = (),
        ipv6_prefix_length: int = 64,
        jwt_secret: str | None = None,
    ):
        self.trusted_networks = parse_networks(trusted_proxies)
        self.ipv6_prefix_length = ipv6_prefix_length
        self.jwt_secret = jwt_secret

    def _is_trusted(self, host: str | None) -> bool:
        if not host or not self.trusted_networks:
            return False
        try:
            address = ipaddress.ip_address(host)
        except ValueError:
            return False
        return any(address in network for network in self.trusted_networks)

    def client_ip(self, peer: str | None, forwarded_for: str | None) -> str:
        """
        Pick the client address.

        X-Forwarded-For is honored only when the immediate peer is a trusted
        proxy; the chain is walked right to left and the first hop that is not
        itself a trusted proxy is the client.
        """
        if not forwarded_for or not self._is_trusted(peer):
            return normalize_ip(peer, self.ipv6_prefix_length)
        hops = [h.strip() for h in forwarded_for.split(",") if h.strip()]
        for hop in reversed(hops):
            if not self._is_trusted(hop):
                return normalize_ip(hop, self.ipv6_prefix_length)
        # Every hop is a proxy; the left-most one is as close to the client as we get
        return normalize_ip(hops[0] if hops else peer, self.ipv6_prefix_length)

    def _principal_from_state(self, principal: Any) -> tuple[str, Tier] | None:
        if principal is None:
            return None
        if isinstance(principal, Mapping):
            user_id = principal.get("id") or principal.get("user_id")
            roles = principal.get("roles") or []
        else:
            user_id = getattr(principal, "id", None) or getattr(principal, "user_id", None)
            roles = getattr(principal, "roles", None) or []
        if not user_id:
            return None
        return str(user_id), tier_for_roles(roles)

    def _principal_from_token(self, authorization: str | None) -> tuple[str, Tier] | None:
        token = bearer_token(authorization)
        if token is None:
            return None
        payload = decode_token(token, self.jwt_secret)
        if not payload or payload.get("type", "access") != "access":
            return None
        user_id = payload.get("sub")
        if not user_id:
            return None
        roles = payload.get("roles") or []
        if not isinstance(roles, list):
            roles = []
        return str(user_id), tier_for_roles(roles)

    def resolve(
        self,
        headers: Mapping[str, str],
        peer: str | None,
        principal: Any = None,
    ) -> Identity:
        """
        Resolve the request identity.

        Fails closed to an anonymous, IP-keyed identity: a principal that
        cannot be parsed never causes a denial on its own.
        """
        resolved = None
        try:
            resolved = self._principal_from_state(principal) or self._principal_from_token(
                headers.get("authorization")
            )
        except (AttributeError, TypeError, ValueError) as exc:
            logger.warning(
                "Principal parsing failed; treating request as anonymous",
                extra={"event_type": "identity_parse_failed", "error": str(exc)},
            )
        if resolved is not None:
            user_id, tier = resolved
            return Identity(principal_key=f"user:{user_id}", tier=tier, user_id=user_id)

        ip = self.client_ip(peer, headers.get("x-forwarded-for"))
        return Identity(principal_key=f"ip:{ip}", tier=Tier.ANONYMOUS)
