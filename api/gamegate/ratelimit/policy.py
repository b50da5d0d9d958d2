"""
Policy table: per-class base limits, the gaming-session window, and tier
multipliers.

The table is immutable once built. Reloading swaps the whole table; a reload
that fails validation leaves the previous table active.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Mapping

from pydantic import ValidationError

from gamegate.ratelimit.errors import PolicyError
from gamegate.ratelimit.types import EndpointClass, Tier
from gamegate.schemas.policy import LimitConfig, PolicyFile, SessionPolicyConfig

logger = logging.getLogger(__name__)

SECOND_MS = 1000
MINUTE_MS = 60 * SECOND_MS

DEFAULT_LIMITS: dict[EndpointClass, LimitConfig] = {
    EndpointClass.VOTING: LimitConfig(
        window_ms=MINUTE_MS,
        max=15,
        enforce_for_admin=True,
    ),
    EndpointClass.CLAN: LimitConfig(
        window_ms=2 * MINUTE_MS,
        max=30,
        allow_admin_bypass=True,
    ),
    EndpointClass.TOURNAMENT: LimitConfig(
        window_ms=MINUTE_MS,
        max=40,
        allow_admin_bypass=True,
    ),
    EndpointClass.LEADERBOARD: LimitConfig(
        window_ms=30 * SECOND_MS,
        max=100,
        allow_admin_bypass=True,
    ),
    # Chat and competitive are flat limits: fairness applies to every tier
    EndpointClass.CHAT: LimitConfig(
        window_ms=10 * SECOND_MS,
        max=25,
        enforce_for_admin=True,
        tiered=False,
    ),
    EndpointClass.WEB3: LimitConfig(
        window_ms=5 * MINUTE_MS,
        max=20,
        count_success=False,
        allow_admin_bypass=True,
    ),
    EndpointClass.COMPETITIVE: LimitConfig(
        window_ms=5 * MINUTE_MS,
        max=50,
        enforce_for_admin=True,
        tiered=False,
    ),
    EndpointClass.AUTH: LimitConfig(
        window_ms=15 * MINUTE_MS,
        max=20,
    ),
    EndpointClass.SEARCH: LimitConfig(
        window_ms=MINUTE_MS,
        max=30,
        allow_admin_bypass=True,
    ),
    EndpointClass.GENERIC: LimitConfig(
        window_ms=15 * MINUTE_MS,
        max=500,
        allow_admin_bypass=True,
    ),
}

DEFAULT_GAMING_SESSION = SessionPolicyConfig(window_ms=MINUTE_MS, max=200)

DEFAULT_TIER_MULTIPLIERS: dict[Tier, float] = {
    Tier.ANONYMOUS: 0.5,
    Tier.REGISTERED: 1.0,
    Tier.PREMIUM: 2.0,
    Tier.CLAN_LEADER: 2.5,
    Tier.VIP: 3.0,
    Tier.TOURNAMENT: 5.0,
    Tier.MODERATOR: 8.0,
    Tier.ADMIN: 20.0,
}


@dataclass(frozen=True)
class PolicyTable:
    limits: Mapping[EndpointClass, LimitConfig]
    gaming_session: SessionPolicyConfig
    tier_multipliers: Mapping[Tier, float]

    def limit_for(self, endpoint_class: EndpointClass) -> LimitConfig:
        return self.limits.get(endpoint_class) or self.limits[EndpointClass.GENERIC]

    def multiplier(self, tier: Tier) -> float:
        return self.tier_multipliers[tier]


def build_policy_table(overrides: PolicyFile | None = None) -> PolicyTable:
    """Merge an optional policy document over the built-in defaults."""
    limits = dict(DEFAULT_LIMITS)
    gaming_session = DEFAULT_GAMING_SESSION
    multipliers = dict(DEFAULT_TIER_MULTIPLIERS)

    if overrides is not None:
        limits.update(overrides.limits)
        if overrides.gaming_session is not None:
            gaming_session = overrides.gaming_session
        for name, value in overrides.tier_multipliers.items():
            multipliers[Tier[name.upper()]] = value

    # Raising a tier must never shrink a quota
    ordered = [multipliers[tier] for tier in sorted(Tier)]
    if any(lower > higher for lower, higher in zip(ordered, ordered[1:])):
        raise PolicyError("tier multipliers must be non-decreasing by tier")

    return PolicyTable(
        limits=MappingProxyType(limits),
        gaming_session=gaming_session,
        tier_multipliers=MappingProxyType(multipliers),
    )


def load_policy_file(path: str | Path) -> PolicyTable:
    """Read and validate a JSON policy document.

    Raises:
        PolicyError: if the file is missing, not JSON, or fails validation
    """
    try:
        raw = Path(path).read_text(encoding="utf-8")
        document = PolicyFile.model_validate(json.loads(raw))
    except (OSError, ValueError, ValidationError) as exc:
        # ValidationError subclasses ValueError; listed for clarity
        raise PolicyError(f"Invalid policy file {path}: {exc}") from exc
    return build_policy_table(document)


class PolicyHolder:
    """Holds the active policy table and swaps it on reload."""

    def __init__(self, table: PolicyTable | None = None, path: str = ""):
        self.path = path
        self._table = table or build_policy_table()

    @property
    def table(self) -> PolicyTable:
        return self._table

    def reload(self) -> PolicyTable:
        """
        Reload from the configured path (or the defaults when no path is set).

        Counters live in the ledger and are keyed by class, so swapping the
        table never touches them.

        Raises:
            PolicyError: the new table is invalid; the previous one stays active
        """
        try:
            table = load_policy_file(self.path) if self.path else build_policy_table()
        except PolicyError as exc:
            logger.error(
                "Policy reload failed; keeping previous policy",
                extra={"event_type": "policy_reload_failed", "path": self.path, "error": str(exc)},
            )
            raise
        changed = table != self._table
        self._table = table
        logger.info(
            "Policy reloaded",
            extra={"event_type": "policy_reloaded", "path": self.path, "changed": changed},
        )
        return table
