"""
Admission decider.

Pure functions: given the policy, the caller's tier, the gaming context and
the process-wide load signal, work out the effective quota; given the ledger
outcome, turn it into Admit, Delay or Deny.
"""

import math
from dataclasses import dataclass

from gamegate.ratelimit.policy import PolicyTable
from gamegate.ratelimit.types import (
    Admit,
    AdaptiveState,
    Admitted,
    CommitResult,
    Delay,
    Deny,
    DenyReason,
    EndpointClass,
    GamingContext,
    SessionRecord,
    Tier,
    Verdict,
)

MIN_RETRY_AFTER_MS = 1000


@dataclass(frozen=True)
class DeciderConfig:
    """Tunables for the decider; built from Settings by the middleware."""

    load_high: float = 0.8
    load_medium: float = 0.6
    slowdown_threshold: float = 0.7
    slowdown_battery_threshold: float = 0.5
    slowdown_cap_ms: int = 20_000
    emergency_mode: bool = False


@dataclass(frozen=True)
class EffectiveLimit:
    effective_max: int
    # Same computation without the adaptive factor; tells shedding apart from quota
    unadapted_max: int
    window_ms: int
    session_applied: bool = False
    participant_boost: bool = False


def adaptive_factor(state: AdaptiveState, config: DeciderConfig) -> float:
    if state.service_load > config.load_high:
        return 0.5
    if state.service_load > config.load_medium:
        return 0.75
    return 1.0


def compute_effective_max(
    table: PolicyTable,
    endpoint_class: EndpointClass,
    ctx: GamingContext,
    tier: Tier,
    state: AdaptiveState,
    session: SessionRecord | None = None,
    tournament_participant: bool = False,
    config: DeciderConfig | None = None,
) -> EffectiveLimit:
    """
    Effective quota for one request.

    The gaming-session policy replaces the base window and max before the
    tier factor is applied. A confirmed tournament participant gets the
    tournament multiplier on top, even on flat (non-tiered) classes.
    """
    config = config or DeciderConfig()
    policy = table.limit_for(endpoint_class)
    base, window_ms = policy.max, policy.window_ms

    session_applied = ctx.gaming_session and session is not None
    if session_applied:
        base, window_ms = table.gaming_session.max, table.gaming_session.window_ms

    factor = table.multiplier(tier) if policy.tiered else 1.0

    participant_boost = ctx.tournament_mode and tournament_participant
    if participant_boost:
        factor *= max(1.0, table.multiplier(Tier.TOURNAMENT))

    unadapted = max(1, math.floor(base * factor))
    effective = max(1, math.floor(base * factor * adaptive_factor(state, config)))
    return EffectiveLimit(
        effective_max=effective,
        unadapted_max=unadapted,
        window_ms=window_ms,
        session_applied=session_applied,
        participant_boost=participant_boost,
    )


def should_bypass(table: PolicyTable, endpoint_class: EndpointClass, tier: Tier, emergency_mode: bool = False) -> bool:
    """Privileged callers skip the ledger entirely, unless the class enforces for admins."""
    if endpoint_class == EndpointClass.HEALTH:
        return True
    policy = table.limit_for(endpoint_class)
    if policy.enforce_for_admin:
        return False
    if tier < Tier.MODERATOR:
        return False
    return policy.allow_admin_bypass or emergency_mode


def slowdown_delay(
    count: int,
    effective_max: int,
    remaining_window_ms: int,
    threshold: float,
    cap_ms: int,
) -> int:
    """
    Delay in ms for the ``count``-th admitted request.

    Zero below ``threshold × effective_max``, growing linearly to ``cap_ms``
    at ``effective_max``, and never longer than what is left of the window.
    """
    if count <= 0 or cap_ms <= 0:
        return 0
    start = threshold * effective_max
    if count < start:
        return 0
    span = effective_max - start
    fraction = 1.0 if span <= 0 else min(1.0, (count - start) / span)
    return max(0, min(int(cap_ms * fraction), remaining_window_ms))


def decide(
    result: CommitResult,
    limit: EffectiveLimit,
    now_ms: int,
    battery_saver: bool = False,
    config: DeciderConfig | None = None,
) -> Verdict:
    config = config or DeciderConfig()

    if not isinstance(result, Admitted):
        reason = DenyReason.SHED if result.count + 1 <= limit.unadapted_max else DenyReason.QUOTA
        return Deny(reason=reason, retry_after_ms=max(MIN_RETRY_AFTER_MS, result.retry_after_ms))

    # Battery saver only shifts where shaping starts; it never causes a denial
    threshold = config.slowdown_battery_threshold if battery_saver else config.slowdown_threshold
    remaining = max(0, result.window_start_ms + limit.window_ms - now_ms)
    delay_ms = slowdown_delay(result.count, limit.effective_max, remaining, threshold, config.slowdown_cap_ms)
    if delay_ms > 0:
        return Delay(delay_ms=delay_ms)
    return Admit()
